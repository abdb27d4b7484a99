"""
The ``org`` module: connects to an on-chain organization (a kernel, its ACL
and its installed apps) and manages its permissions.

Organization data is read through the chain client; app artifacts (ABI and
role metadata) are fetched through the content fetcher and cached by code
address.
"""
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from crisp.crisp_bindings import BindingSpace
from crisp.crisp_datatypes import (
    BatchAction, BlockExpression, ProbableIdentifier, TransactionAction,
    ZERO_ADDRESS, is_address, same_address,
)
from crisp.crisp_errors import InvalidOperation
from crisp.crisp_modules import ArgsLength, Command, Module
from crisp.crisp_printer import Printer
from crisp.crisp_std import FunctionSignature

KERNEL_ABI = [
    {"type": "function", "name": "acl", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
    {"type": "function", "name": "getApps", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "tuple[]", "components": [
         {"name": "name", "type": "string"},
         {"name": "address", "type": "address"},
         {"name": "codeAddress", "type": "address"},
         {"name": "contentUri", "type": "string"},
     ]}]},
]

ACL_ABI = [
    {"type": "function", "name": "getPermissions", "stateMutability": "view",
     "inputs": [{"name": "app", "type": "address"}],
     "outputs": [{"name": "", "type": "tuple[]", "components": [
         {"name": "role", "type": "bytes32"},
         {"name": "grantees", "type": "address[]"},
         {"name": "manager", "type": "address"},
     ]}]},
]

FORWARDER_ABI = [
    {"type": "function", "name": "isForwarder", "stateMutability": "pure", "inputs": [],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "forwarderType", "stateMutability": "pure", "inputs": [],
     "outputs": [{"name": "", "type": "uint8"}]},
]

FORWARDER_NO_CONTEXT = 1
FORWARDER_WITH_CONTEXT = 2

CALLSCRIPT_ID = "0x00000001"

ROLE_HASH_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')
PREFIXED_APP_RE = re.compile(r'^_([^:]+):(.+)$')

ORGANIZATION_KEY = "organization"


class Permission:
    def __init__(self, manager: Optional[str] = None, grantees=()):
        self.manager = manager
        self.grantees: Set[str] = {g.lower() for g in grantees}

    def has_grantee(self, address: str) -> bool:
        return address.lower() in self.grantees

    def __repr__(self):
        return f"<Permission manager={self.manager} grantees={sorted(self.grantees)}>"


class App:
    """An app installed in an organization."""
    def __init__(self, name: str, index: int, address: str, code_address: str,
                 content_uri: str = "", abi: Optional[list] = None, roles: Optional[Dict[str, str]] = None):
        self.name = name
        self.index = index
        self.address = address
        self.code_address = code_address
        self.content_uri = content_uri
        self.abi = abi or []
        self.roles = roles or {}
        self.permissions: Dict[str, Permission] = {}

    @property
    def identifier(self) -> str:
        return self.name if self.index == 0 else f"{self.name}:{self.index}"

    @property
    def label(self) -> str:
        return self.name.split('.')[0]

    def __repr__(self):
        return f"<App {self.identifier} {self.address}>"


class Organization:
    """A connected organization: its apps, their artifacts and their permissions."""
    def __init__(self, address: str, acl: str, nesting_index: int = 0):
        self.address = address
        self.acl = acl
        self.nesting_index = nesting_index
        self.apps: Dict[str, App] = {}
        self.identifiers: Dict[str, str] = {}
        self.artifacts: Dict[str, dict] = {}

    def add_app(self, app: App, artifact: Optional[dict] = None):
        self.apps[app.address.lower()] = app
        self.identifiers[app.identifier] = app.address
        self.identifiers[f"{app.name}:{app.index}"] = app.address
        if artifact is not None:
            self.artifacts[app.code_address.lower()] = artifact

    def resolve_app(self, identifier: Any) -> Optional[App]:
        if not isinstance(identifier, str):
            return None
        if is_address(identifier):
            return self.apps.get(identifier.lower())
        address = self.identifiers.get(identifier)
        return self.apps.get(address.lower()) if address else None

    def app_identifiers(self) -> List[str]:
        return [app.identifier for app in self.apps.values()]

    def role_names(self, app: Optional[App] = None) -> List[str]:
        apps = [app] if app is not None else list(self.apps.values())
        names = []
        for a in apps:
            names += [r for r in a.roles if r not in names]
        return names

    @classmethod
    async def fetch(cls, address: str, clients, load_artifact: Callable[[str, str], Awaitable[dict]]) -> 'Organization':
        chain = clients.require('chain')
        acl = await chain.read_contract(address, KERNEL_ABI, "acl", [])
        org = cls(address, acl)
        counts: Dict[str, int] = {}
        for name, app_address, code_address, content_uri in await chain.read_contract(address, KERNEL_ABI, "getApps", []):
            artifact = await load_artifact(code_address, content_uri)
            index = counts.get(name, 0)
            counts[name] = index + 1
            app = App(
                name, index, app_address, code_address, content_uri,
                abi=artifact.get("abi", []),
                roles={r["id"]: r["bytes"] for r in artifact.get("roles", [])},
            )
            for role, grantees, manager in await chain.read_contract(acl, ACL_ABI, "getPermissions", [app_address]):
                manager = None if not manager or same_address(manager, ZERO_ADDRESS) else manager
                app.permissions[role] = Permission(manager, grantees)
            org.add_app(app, artifact)
        return org

    def __repr__(self):
        return f"<Organization {self.address} nesting={self.nesting_index} apps={len(self.apps)}>"


def encode_call_script(actions: List[TransactionAction]) -> str:
    """Packs calls into an EVM call script: id, then ``to | uint32 length | calldata`` per call."""
    script = CALLSCRIPT_ID
    for action in actions:
        data = action.data[2:] if action.data.startswith("0x") else action.data
        script += action.to[2:].lower() + format(len(data) // 2, "08x") + data
    return script


def flatten_transactions(actions) -> List[TransactionAction]:
    out = []
    for action in actions:
        if isinstance(action, BatchAction):
            if action.transaction is not None:
                out.append(action.transaction)
            else:
                out.extend(flatten_transactions(action.actions))
        else:
            out.append(action)
    return out


def bind_organization(bindings, org: Organization, scope=None):
    bindings.set(BindingSpace.DATA_PROVIDER, ORGANIZATION_KEY, org, scope)
    for identifier, address in org.identifiers.items():
        bindings.set(BindingSpace.ADDR, identifier, address, scope)


def connected_organizations(interpreter) -> List[Organization]:
    return [e for e in interpreter.context.entity_stack if isinstance(e, Organization)]


def current_organization(interpreter) -> Organization:
    orgs = connected_organizations(interpreter)
    if not orgs:
        raise InvalidOperation('must be used within a "connect" command')
    return orgs[-1]


def _describe(value) -> str:
    return value if isinstance(value, str) else Printer().pformat(value)


def split_prefixed_identifier(interpreter, identifier: str) -> Tuple[Organization, str]:
    """Resolves ``_<address|nestingIndex>:<app>`` into the organization and the app identifier."""
    m = PREFIXED_APP_RE.match(identifier)
    if not m:
        return current_organization(interpreter), identifier
    prefix, app_identifier = m.groups()
    for org in connected_organizations(interpreter):
        if same_address(org.address, prefix) or str(org.nesting_index) == prefix:
            return org, app_identifier
    raise InvalidOperation(f"couldn't find an organization for {prefix} on given identifier {identifier}")


async def resolve_app(interpreter, node) -> Tuple[Organization, App]:
    if isinstance(node, ProbableIdentifier):
        org, identifier = split_prefixed_identifier(interpreter, node.value)
        app = org.resolve_app(identifier)
        if app is not None:
            return org, app
    value = await interpreter.interpret_node(node)
    if is_address(value):
        for org in reversed(connected_organizations(interpreter)):
            app = org.resolve_app(value)
            if app is not None:
                return org, app
    raise InvalidOperation(f'app "{_describe(getattr(node, "value", value))}" not found')


async def resolve_address(interpreter, node) -> str:
    if isinstance(node, ProbableIdentifier) and PREFIXED_APP_RE.match(node.value):
        _, app = await resolve_app(interpreter, node)
        return app.address
    value = await interpreter.interpret_node(node)
    if not is_address(value):
        raise InvalidOperation(f'expected a valid address, but got "{_describe(value)}"')
    return value


def role_id(interpreter, app: App, role: Any) -> str:
    if not isinstance(role, str):
        raise InvalidOperation(f"expected a role name, but got {_describe(role)}")
    if ROLE_HASH_RE.match(role):
        return role
    if role in app.roles:
        return app.roles[role]
    if app.roles:
        raise InvalidOperation(f'given permission "{role}" doesn\'t exist on app {app.label}')
    return interpreter.clients.require('codec').id(role)


def acl_call(interpreter, org: Organization, signature: str, args: list) -> TransactionAction:
    data = interpreter.clients.require('codec').encode_call(signature, args)
    return TransactionAction(org.acl, data)


# =================================================================
# Commands
# =================================================================

class ConnectCommand(Command):
    name = "connect"
    args_length = ArgsLength.at_least(2)
    opts = ("context",)

    async def _organization_address(self, interpreter, node) -> str:
        value = await interpreter.interpret_node(node)
        if is_address(value):
            return value
        resolver = interpreter.clients.resolver if interpreter.clients else None
        if isinstance(value, str) and resolver is not None:
            resolved = await resolver.resolve(value)
            if resolved:
                return resolved
        raise InvalidOperation(f'expected a valid organization address or name, but got "{_describe(value)}"')

    async def run(self, module, c, interpreter):
        *head, block = c.args
        if not isinstance(block, BlockExpression):
            raise InvalidOperation("last argument should be a set of commands")
        org_node, *forwarder_nodes = head

        address = await self._organization_address(interpreter, org_node)
        for connected in connected_organizations(interpreter):
            if same_address(connected.address, address):
                raise InvalidOperation(f"trying to connect to an already connected organization ({address})")

        org = await module.fetch_organization(address, interpreter)
        org.nesting_index = len(interpreter.context.entity_stack) + 1
        module.connected.append(org)

        forwarders = []
        for node in forwarder_nodes:
            app = org.resolve_app(node.value) if isinstance(node, ProbableIdentifier) else None
            forwarders.append(app.address if app is not None else await resolve_address(interpreter, node))
        context = await interpreter.get_opt(c, "context")

        interpreter.context.entity_stack.append(org)
        try:
            actions = await interpreter.interpret_block(
                block, module, setup=lambda scope: bind_organization(interpreter.bindings, org, scope)
            )
        finally:
            interpreter.context.entity_stack.pop()

        if not forwarders:
            return actions
        transaction = await self.forward(interpreter, actions, forwarders, context)
        return [BatchAction(actions, transaction)]

    async def forward(self, interpreter, actions, forwarders: List[str], context: Optional[str]) -> TransactionAction:
        chain = interpreter.clients.require('chain')
        codec = interpreter.clients.require('codec')
        calls = flatten_transactions(actions)
        for forwarder in forwarders:
            script = encode_call_script(calls)
            try:
                is_forwarder = await chain.read_contract(forwarder, FORWARDER_ABI, "isForwarder", [])
            except Exception:
                is_forwarder = False
            if not is_forwarder:
                raise InvalidOperation(f"app {forwarder} is not a forwarder")
            try:
                kind = int(await chain.read_contract(forwarder, FORWARDER_ABI, "forwarderType", []))
            except Exception:
                kind = FORWARDER_NO_CONTEXT
            if kind == FORWARDER_WITH_CONTEXT:
                if not context:
                    raise InvalidOperation("context option missing")
                data = codec.encode_call("forward(bytes,bytes)", [script, "0x" + str(context).encode().hex()])
            else:
                data = codec.encode_call("forward(bytes)", [script])
            calls = [TransactionAction(forwarder, data)]
        return calls[0]

    async def run_eager(self, module, c, cache, handles, caret):
        address = handles.evaluate(c.args[0])
        if not is_address(address) or handles.clients is None:
            return None

        async def load_artifact(code_address, content_uri):
            return await cache.resolve(
                BindingSpace.CACHE, f"artifact:{code_address.lower()}",
                lambda: fetch_artifact(handles.clients, content_uri),
            ) or {}

        org = await cache.resolve(
            BindingSpace.CACHE, f"organization:{address.lower()}",
            lambda: Organization.fetch(address, handles.clients, load_artifact),
        )
        if org is None:
            return None

        def bind(bindings):
            bind_organization(bindings, org)
        return bind

    def completion_items(self, arg_index, c, bindings):
        if arg_index == 0:
            return bindings.all_identifiers([BindingSpace.ADDR])
        return []


def _bound_organization(bindings) -> Optional[Organization]:
    return bindings.get(BindingSpace.DATA_PROVIDER, ORGANIZATION_KEY)


def _permission_items(arg_index, c, bindings, last: List[str]) -> List[str]:
    org = _bound_organization(bindings)
    if org is None:
        return []
    match arg_index:
        case 0:
            return org.app_identifiers() + bindings.all_identifiers([BindingSpace.ADDR])
        case 1:
            return org.app_identifiers()
        case 2:
            app = None
            if c is not None and len(c.args) > 1 and isinstance(c.args[1], ProbableIdentifier):
                app = org.resolve_app(c.args[1].value)
            return org.role_names(app)
        case 3:
            return last
        case _:
            return []


class GrantCommand(Command):
    name = "grant"
    args_length = ArgsLength.between(3, 4)

    async def run(self, module, c, interpreter):
        current_organization(interpreter)
        grantee_node, app_node, role_node, *manager_node = c.args
        grantee = await resolve_address(interpreter, grantee_node)
        org, app = await resolve_app(interpreter, app_node)
        role = role_id(interpreter, app, await interpreter.interpret_node(role_node, treat_as_literal=True))

        permission = app.permissions.get(role)
        if permission is not None and permission.manager:
            if permission.has_grantee(grantee):
                raise InvalidOperation(f"grantee already has given permission on app {app.label}")
            permission.grantees.add(grantee.lower())
            return [acl_call(interpreter, org, "grantPermission(address,address,bytes32)", [grantee, app.address, role])]

        if not manager_node:
            raise InvalidOperation(f"required permission manager for role {role} on app {app.label}")
        manager = await resolve_address(interpreter, manager_node[0])
        app.permissions[role] = Permission(manager, [grantee])
        return [acl_call(
            interpreter, org, "createPermission(address,address,bytes32,address)",
            [grantee, app.address, role, manager],
        )]

    def completion_items(self, arg_index, c, bindings):
        return _permission_items(arg_index, c, bindings, bindings.all_identifiers([BindingSpace.ADDR]))


class RevokeCommand(Command):
    name = "revoke"
    args_length = ArgsLength.between(3, 4)

    async def run(self, module, c, interpreter):
        current_organization(interpreter)
        grantee_node, app_node, role_node, *remove_node = c.args
        grantee = await resolve_address(interpreter, grantee_node)
        org, app = await resolve_app(interpreter, app_node)
        role = role_id(interpreter, app, await interpreter.interpret_node(role_node, treat_as_literal=True))
        remove_manager = False
        if remove_node:
            remove_manager = await interpreter.interpret_node(remove_node[0])
            if not isinstance(remove_manager, bool):
                raise InvalidOperation(f"expected a boolean as removeManager, but got {_describe(remove_manager)}")

        permission = app.permissions.get(role)
        if permission is None or not permission.has_grantee(grantee):
            raise InvalidOperation(f"grantee {grantee} doesn't have the given permission on app {app.label}")
        permission.grantees.discard(grantee.lower())
        actions = [acl_call(interpreter, org, "revokePermission(address,address,bytes32)", [grantee, app.address, role])]

        if remove_manager:
            if not permission.manager:
                raise InvalidOperation(f"permission on app {app.label} has no manager to remove")
            permission.manager = None
            actions.append(acl_call(interpreter, org, "removePermissionManager(address,bytes32)", [app.address, role]))
        return actions

    def completion_items(self, arg_index, c, bindings):
        return _permission_items(arg_index, c, bindings, ["true", "false"])


class ActCommand(Command):
    name = "act"
    args_length = ArgsLength.at_least(3)

    async def run(self, module, c, interpreter):
        agent_node, target_node, sig_node, *param_nodes = c.args
        agent = await resolve_address(interpreter, agent_node)
        target = await resolve_address(interpreter, target_node)
        signature = FunctionSignature.parse(await interpreter.interpret_node(sig_node, treat_as_literal=True))
        if len(param_nodes) != len(signature.inputs):
            raise InvalidOperation(
                f"invalid number of parameters for {signature.selector_text}. "
                f"Expected {len(signature.inputs)} but got {len(param_nodes)}"
            )
        params = await interpreter.interpret_nodes(param_nodes, parallel=True)
        codec = interpreter.clients.require('codec')
        script = encode_call_script([TransactionAction(target, codec.encode_call(signature.selector_text, params))])
        return [TransactionAction(agent, codec.encode_call("forward(bytes)", [script]))]

    def completion_items(self, arg_index, c, bindings):
        if arg_index in (0, 1):
            return bindings.all_identifiers([BindingSpace.ADDR])
        return []


async def fetch_artifact(clients, content_uri: str) -> dict:
    if not content_uri:
        return {"abi": [], "roles": []}
    raw = await clients.require('fetcher').fetch(content_uri.rstrip('/') + "/artifact.json")
    return json.loads(raw)


class OrgModule(Module):
    name = "org"
    commands = {
        cmd.name: cmd for cmd in (ConnectCommand(), GrantCommand(), RevokeCommand(), ActCommand())
    }
    helpers = {}

    def __init__(self, registry, alias=None):
        super().__init__(registry, alias)
        self.connected: List[Organization] = []
        self._artifacts: Dict[str, dict] = {}

    def get_connected_organization(self, address: str) -> Optional[Organization]:
        for org in reversed(self.connected):
            if same_address(org.address, address):
                return org
        return None

    async def fetch_organization(self, address: str, interpreter) -> Organization:
        async def load_artifact(code_address, content_uri):
            key = code_address.lower()
            if key not in self._artifacts:
                self._artifacts[key] = await fetch_artifact(interpreter.clients, content_uri)
            return self._artifacts[key]
        return await Organization.fetch(address, interpreter.clients, load_artifact)
