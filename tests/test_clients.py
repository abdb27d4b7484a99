import httpx
import pytest

from crisp.crisp_clients import Clients, HttpContentFetcher
from crisp.crisp_config import CrispConfig
from crisp.crisp_errors import InvalidOperation


def test_ipfs_locators_map_to_the_gateway():
    fetcher = HttpContentFetcher(gateway="https://gw.example/ipfs")
    assert fetcher.to_url("ipfs:QmAbc/artifact.json") == "https://gw.example/ipfs/QmAbc/artifact.json"
    assert fetcher.to_url("ipfs://QmAbc") == "https://gw.example/ipfs/QmAbc"
    assert fetcher.to_url("https://x.example/a.json") == "https://x.example/a.json"


def test_from_config():
    config = CrispConfig(ipfs_gateway="https://gw.example/", http_timeout=1.5, http_retries=4, http_backoff=0.0)
    fetcher = HttpContentFetcher.from_config(config)
    assert fetcher.gateway == "https://gw.example/"
    assert fetcher.timeout == 1.5
    assert fetcher.retries == 4


@pytest.mark.asyncio
async def test_fetch_returns_content():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, content=b'{"abi": []}')

    fetcher = HttpContentFetcher(gateway="https://gw.example/ipfs/", transport=httpx.MockTransport(handler))
    assert await fetcher.fetch("ipfs:QmAbc/artifact.json") == b'{"abi": []}'
    assert seen == ["https://gw.example/ipfs/QmAbc/artifact.json"]


@pytest.mark.asyncio
async def test_fetch_retries_then_succeeds():
    attempts = []

    def handler(request):
        attempts.append(1)
        if len(attempts) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, content=b"ok")

    fetcher = HttpContentFetcher(retries=2, backoff=0.0, transport=httpx.MockTransport(handler))
    assert await fetcher.fetch("https://x.example/a") == b"ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_fetch_gives_up_after_retries():
    attempts = []

    def handler(request):
        attempts.append(1)
        return httpx.Response(503, text="unavailable")

    fetcher = HttpContentFetcher(retries=1, backoff=0.0, transport=httpx.MockTransport(handler))
    with pytest.raises(RuntimeError) as exc:
        await fetcher.fetch("https://x.example/a")
    assert "HTTP 503" in str(exc.value)
    assert len(attempts) == 2


def test_clients_require():
    clients = Clients()
    with pytest.raises(InvalidOperation) as exc:
        clients.require('chain')
    assert str(exc.value) == "no chain client configured"
