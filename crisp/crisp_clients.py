"""
External collaborators consumed by the interpreter.

The engine never talks to a chain, a name service or a content network
directly. It goes through the small interfaces below, bundled in a
``Clients`` object handed to each interpretation.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import httpx

from crisp.crisp_errors import InvalidOperation


class ChainClient(ABC):
    @abstractmethod
    async def read_contract(self, address: str, abi: Any, function_name: str, args: Sequence[Any] = ()) -> Any:
        """Performs a read-only contract call and returns its decoded result."""

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> Any: ...

    @abstractmethod
    async def get_chain_id(self) -> int: ...

    @abstractmethod
    async def get_connected_account(self) -> Optional[str]: ...


class NameResolver(ABC):
    @abstractmethod
    async def resolve(self, name: str) -> Optional[str]:
        """Returns the address a name points to, or ``None``."""


class ContentFetcher(ABC):
    @abstractmethod
    async def fetch(self, locator: str) -> bytes: ...


class AbiCodec(ABC):
    @abstractmethod
    def encode_call(self, signature: str, args: Sequence[Any]) -> str:
        """Encodes a call to ``signature`` (e.g. ``transfer(address,uint256)``) as hex calldata."""

    @abstractmethod
    def decode_return(self, signature: str, data: str) -> Any: ...

    @abstractmethod
    def id(self, text: str) -> str:
        """Hashes ``text`` into a 32-byte hex identifier (roles, app ids)."""


class Clients:
    """The collaborators available to one interpretation. Any of them may be missing."""
    def __init__(
        self,
        chain: Optional[ChainClient] = None,
        resolver: Optional[NameResolver] = None,
        fetcher: Optional[ContentFetcher] = None,
        codec: Optional[AbiCodec] = None,
    ):
        self.chain = chain
        self.resolver = resolver
        self.fetcher = fetcher
        self.codec = codec

    def require(self, kind: str):
        client = getattr(self, kind, None)
        if client is None:
            raise InvalidOperation(f"no {kind} client configured")
        return client


class HttpContentFetcher(ContentFetcher):
    """Fetches content over HTTP(S) with timeout, retries and exponential backoff.

    ``ipfs:<cid>`` and ``ipfs://<cid>`` locators are served from the
    configured gateway.
    """
    def __init__(
        self,
        gateway: str = "https://ipfs.io/ipfs/",
        timeout: float = 5.0,
        retries: int = 2,
        backoff: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.gateway = gateway if gateway.endswith('/') else gateway + '/'
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.transport = transport

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> 'HttpContentFetcher':
        return cls(
            gateway=config.ipfs_gateway,
            timeout=config.http_timeout,
            retries=config.http_retries,
            backoff=config.http_backoff,
            transport=transport,
        )

    def to_url(self, locator: str) -> str:
        for prefix in ('ipfs://', 'ipfs:'):
            if locator.startswith(prefix):
                return self.gateway + locator[len(prefix):].lstrip('/')
        return locator

    async def fetch(self, locator: str) -> bytes:
        url = self.to_url(locator)
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport) as client:
            last_exc = None
            for attempt in range(self.retries + 1):
                try:
                    resp = await client.get(url)
                    if 200 <= resp.status_code < 300:
                        return resp.content
                    preview = (resp.text or "")[:200]
                    raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
                except Exception as e:
                    last_exc = e
                    if attempt < self.retries:
                        await asyncio.sleep(self.backoff * (2 ** attempt))
                        continue
                    raise last_exc
