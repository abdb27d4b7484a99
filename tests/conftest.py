import hashlib
import json

import pytest

from crisp.crisp_clients import AbiCodec, ChainClient, Clients, ContentFetcher, NameResolver

ME = "0x" + "e" * 40


def addr(seed: str) -> str:
    """A deterministic address built from a short hex seed."""
    return "0x" + (seed * 40)[:40]


class FakeChain(ChainClient):
    """Answers contract reads from a table keyed by (address, function name)."""
    def __init__(self, account=ME, chain_id=1):
        self.account = account
        self.chain_id = chain_id
        self.contracts = {}
        self.calls = []

    def on(self, address, function_name, value):
        self.contracts[(address.lower(), function_name)] = value

    async def read_contract(self, address, abi, function_name, args=()):
        self.calls.append((address.lower(), function_name, list(args)))
        key = (address.lower(), function_name)
        if key not in self.contracts:
            raise RuntimeError(f"no fake for {function_name} on {address}")
        value = self.contracts[key]
        return value(*args) if callable(value) else value

    async def wait_for_receipt(self, tx_hash):
        return {"transactionHash": tx_hash, "status": 1}

    async def get_chain_id(self):
        return self.chain_id

    async def get_connected_account(self):
        return self.account


class FakeCodec(AbiCodec):
    def encode_call(self, signature, args):
        selector = hashlib.sha256(signature.encode()).hexdigest()[:8]
        payload = json.dumps([str(a) for a in args]).encode().hex()
        return "0x" + selector + payload

    def decode_return(self, signature, data):
        return data

    def id(self, text):
        return "0x" + hashlib.sha256(text.encode()).hexdigest()


class FakeFetcher(ContentFetcher):
    def __init__(self, content=None):
        self.content = dict(content or {})
        self.calls = []

    async def fetch(self, locator):
        self.calls.append(locator)
        if locator not in self.content:
            raise RuntimeError(f"nothing at {locator}")
        value = self.content[locator]
        return value if isinstance(value, bytes) else json.dumps(value).encode()


class FakeResolver(NameResolver):
    def __init__(self, names=None):
        self.names = dict(names or {})

    async def resolve(self, name):
        return self.names.get(name)


def add_organization(chain, fetcher, address, apps, permissions=None, forwarders=None):
    """Registers a fake organization on ``chain`` and its artifacts on ``fetcher``.

    ``apps`` maps an app name to ``(app_address, roles)`` where ``roles`` maps
    role names to role hashes. ``permissions`` maps an app address to a list
    of ``(role_hash, grantees, manager)``. ``forwarders`` maps an app address
    to its forwarder type.
    """
    acl = addr("ac" + address[2:6])
    chain.on(address, "acl", acl)
    rows = []
    for name, (app_address, roles) in apps.items():
        code = addr("c0" + app_address[2:6])
        uri = f"ipfs:Qm{name}{app_address[2:6]}"
        rows.append((name, app_address, code, uri))
        fetcher.content[uri + "/artifact.json"] = {
            "abi": [],
            "roles": [{"id": role, "bytes": value} for role, value in roles.items()],
        }
    chain.on(address, "getApps", rows)
    table = permissions or {}
    chain.on(acl, "getPermissions", lambda app: table.get(app, []))
    for forwarder, kind in (forwarders or {}).items():
        chain.on(forwarder, "isForwarder", True)
        chain.on(forwarder, "forwarderType", kind)
    return acl


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def codec():
    return FakeCodec()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def clients(chain, codec, fetcher, resolver):
    return Clients(chain=chain, resolver=resolver, fetcher=fetcher, codec=codec)
