"""
The default ``std`` module: variables, raw contract calls, assertions and
general-purpose helpers.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

from crisp.crisp_bindings import BindingSpace
from crisp.crisp_config import CrispConfig
from crisp.crisp_datatypes import (
    TIME_UNITS, CommandExpression, FixedPoint, Placeholder, TransactionAction, VariableIdentifier,
    is_address, same_address,
)
from crisp.crisp_errors import InvalidOperation
from crisp.crisp_interpreter import is_number
from crisp.crisp_modules import ArgsLength, Command, Helper, Module
from crisp.crisp_printer import Printer

SIGNATURE_RE = re.compile(
    r'^([a-zA-Z_][a-zA-Z0-9_]*)\(([a-zA-Z0-9_,\[\]]*)\)(?::\(([a-zA-Z0-9_,\[\]]*)\))?(?::(\d+))?$'
)

ERC20_ABI = [
    {
        "type": "function", "name": "balanceOf", "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function", "name": "decimals", "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]

COMPARATORS = ('==', '!=', '<', '<=', '>', '>=')

_OPPOSITE = {'==': '!=', '!=': '==', '>': '<=', '>=': '<', '<': '>=', '<=': '>'}


class FunctionSignature:
    """A parsed ``name(inputs)[:(outputs)][:index]`` signature."""
    def __init__(self, name: str, inputs: List[str], outputs: List[str], index: Optional[int] = None):
        self.name = name
        self.inputs = inputs
        self.outputs = outputs
        self.index = index

    @classmethod
    def parse(cls, text: Any) -> 'FunctionSignature':
        m = SIGNATURE_RE.match(text) if isinstance(text, str) else None
        if not m:
            raise InvalidOperation(f'expected a valid function signature, but got "{text}"')
        name, inputs, outputs, index = m.groups()
        return cls(
            name,
            [t for t in inputs.split(',') if t],
            [t for t in (outputs or '').split(',') if t],
            int(index) if index is not None else None,
        )

    @property
    def selector_text(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    def to_abi(self) -> list:
        return [{
            "type": "function",
            "name": self.name,
            "stateMutability": "view",
            "inputs": [{"name": "", "type": t} for t in self.inputs],
            "outputs": [{"name": "", "type": t} for t in self.outputs],
        }]

    def __repr__(self):
        return f"FunctionSignature({self.selector_text})"


def config_of(holder) -> CrispConfig:
    return getattr(holder, 'config', None) or CrispConfig()


def to_int(value: Any, what: str = "value") -> int:
    if isinstance(value, bool) or not is_number(value):
        raise InvalidOperation(f"expected a number as {what}, but got {Printer().pformat(value)}")
    return int(value)


def parse_offset(value: Any) -> int:
    """Seconds from a number or from a string such as ``+1d12h`` or ``-2w``."""
    if is_number(value):
        return int(value)
    if not isinstance(value, str):
        raise InvalidOperation(f"invalid date offset {Printer().pformat(value)}")
    m = re.fullmatch(r'([+-])?((?:\d+(?:mo|s|m|h|d|w|y))+)', value.strip())
    if not m:
        raise InvalidOperation(f'invalid date offset "{value}"')
    seconds = sum(int(n) * TIME_UNITS[u] for n, u in re.findall(r'(\d+)(mo|s|m|h|d|w|y)', m.group(2)))
    return -seconds if m.group(1) == '-' else seconds


async def fetch_token_list(clients, config: CrispConfig) -> list:
    raw = await clients.require('fetcher').fetch(config.token_list_url)
    data = json.loads(raw)
    tokens = data.get('tokens', []) if isinstance(data, dict) else data
    if clients.chain is not None:
        chain_id = await clients.chain.get_chain_id()
        tokens = [t for t in tokens if t.get('chainId', chain_id) == chain_id]
    return tokens


def find_token(tokens: list, symbol: str) -> str:
    if is_address(symbol):
        return symbol
    for token in tokens:
        if token.get('symbol') == symbol:
            return token['address']
    raise InvalidOperation(f"token {symbol} not found")


# =================================================================
# Commands
# =================================================================

class LoadCommand(Command):
    name = "load"
    args_length = ArgsLength.between(1, 3)

    def _target(self, values) -> tuple:
        name = values[0]
        alias = None
        if len(values) > 1:
            if len(values) != 3 or values[1] != 'as':
                raise InvalidOperation('expected "load <module> as <alias>"')
            alias = values[2]
        return name, alias

    async def run(self, module, c, interpreter):
        name, alias = self._target(await interpreter.interpret_nodes(c.args, treat_as_literal=True))
        if name not in module.loadable:
            raise InvalidOperation(f'module "{name}" not found')
        interpreter.load_module(name, alias)
        return []

    async def run_eager(self, module, c, cache, handles, caret):
        name, alias = self._target([getattr(a, "value", None) for a in c.args])
        if name in module.loadable and not handles.registry.is_loaded(name):
            handles.registry.load(name, alias)
        return None

    def completion_items(self, arg_index, c, bindings):
        match arg_index:
            case 0:
                return list(StdModule.loadable)
            case 1:
                return ["as"]
            case _:
                return []


class SetCommand(Command):
    name = "set"
    args_length = ArgsLength.exact(2)

    def _variable(self, c: CommandExpression) -> str:
        target = c.args[0]
        if not isinstance(target, VariableIdentifier):
            raise InvalidOperation("expected a variable identifier as first argument")
        return target.name

    async def run(self, module, c, interpreter):
        name = self._variable(c)
        value = await interpreter.interpret_node(c.args[1])
        interpreter.bindings.set(BindingSpace.USER, name, value)
        return []

    async def run_eager(self, module, c, cache, handles, caret):
        name = self._variable(c)
        value = await handles.resolve(c.args[1])

        def bind(bindings):
            bindings.set(BindingSpace.USER, name, value)
        return bind

    def completion_items(self, arg_index, c, bindings):
        if arg_index == 1:
            return bindings.all_identifiers([BindingSpace.USER])
        return []


class ExecCommand(Command):
    name = "exec"
    args_length = ArgsLength.at_least(2)
    opts = ("value",)

    async def run(self, module, c, interpreter):
        target_node, sig_node, *param_nodes = c.args
        target = await interpreter.interpret_node(target_node)
        if not is_address(target):
            raise InvalidOperation(f'expected a valid address, but got "{target}"')
        signature = FunctionSignature.parse(await interpreter.interpret_node(sig_node, treat_as_literal=True))
        if len(param_nodes) != len(signature.inputs):
            raise InvalidOperation(
                f"invalid number of parameters for {signature.selector_text}. "
                f"Expected {len(signature.inputs)} but got {len(param_nodes)}"
            )
        params = await interpreter.interpret_nodes(param_nodes, parallel=True)
        value = await interpreter.get_opt(c, "value", 0)
        codec = interpreter.clients.require('codec')
        data = codec.encode_call(signature.selector_text, params)
        return [TransactionAction(target, data, to_int(value, "--value"))]

    def completion_items(self, arg_index, c, bindings):
        if arg_index == 0:
            return bindings.all_identifiers([BindingSpace.ADDR])
        if arg_index > 1:
            return bindings.all_identifiers([BindingSpace.USER])
        return []


class PrintCommand(Command):
    name = "print"
    args_length = ArgsLength.at_least(1)

    async def run(self, module, c, interpreter):
        values = await interpreter.interpret_nodes(c.args, parallel=True)
        printer = Printer()
        interpreter.log("".join(v if isinstance(v, str) else printer.pformat(v) for v in values))
        return []

    def completion_items(self, arg_index, c, bindings):
        return bindings.all_identifiers([BindingSpace.USER])


class ExpectCommand(Command):
    name = "expect"
    args_length = ArgsLength.exact(3)

    def compare(self, value, operator, expected) -> bool:
        match operator:
            case '==' | '!=':
                equal = same_address(value, expected) or value == expected
                return equal if operator == '==' else not equal
            case '>' | '>=' | '<' | '<=':
                if not is_number(value) or not is_number(expected):
                    raise InvalidOperation(f"Operator {operator} must be used between two numbers")
                return {
                    '>': value > expected,
                    '>=': value >= expected,
                    '<': value < expected,
                    '<=': value <= expected,
                }[operator]
            case _:
                raise InvalidOperation(f"Operator {operator} not recognized")

    async def run(self, module, c, interpreter):
        value_node, op_node, expected_node = c.args
        value, expected = await interpreter.interpret_nodes([value_node, expected_node], parallel=True)
        operator = await interpreter.interpret_node(op_node, treat_as_literal=True)
        result = self.compare(value, operator, expected)

        fmt = Printer().pformat
        if result:
            interpreter.log(f"Success: expected {fmt(value)} {operator} {fmt(expected)}")
            return []
        interpreter.log(
            f"Assertion error: expected {fmt(value)} {operator} {fmt(expected)}, "
            f"but {fmt(value)} {_OPPOSITE[operator]} {fmt(expected)}."
        )
        raise InvalidOperation("An assertion failed.")

    def completion_items(self, arg_index, c, bindings):
        if arg_index == 1:
            return list(COMPARATORS)
        if arg_index in (0, 2):
            return bindings.all_identifiers([BindingSpace.USER])
        return []


# =================================================================
# Helpers
# =================================================================

class MeHelper(Helper):
    name = "me"
    args_length = ArgsLength.exact(0)

    async def run(self, module, h, interpreter):
        account = await interpreter.clients.require('chain').get_connected_account()
        if not account:
            raise InvalidOperation("no connected account")
        return account

    async def run_eager(self, module, h, cache, handles):
        chain = handles.clients.chain if handles.clients else None
        if chain is None:
            return None
        return await cache.resolve(BindingSpace.CACHE, "connected-account", chain.get_connected_account)


class GetHelper(Helper):
    name = "get"
    args_length = ArgsLength.at_least(2)

    async def run(self, module, h, interpreter):
        address_node, sig_node, *param_nodes = h.args
        address = await interpreter.interpret_node(address_node)
        signature = FunctionSignature.parse(await interpreter.interpret_node(sig_node, treat_as_literal=True))
        if not is_address(address):
            raise InvalidOperation(f'expected a valid address, but got "{address}"')
        params = await interpreter.interpret_nodes(param_nodes, parallel=True)
        chain = interpreter.clients.require('chain')
        result = await chain.read_contract(address, signature.to_abi(), signature.name, params)
        if signature.index is not None and isinstance(result, (list, tuple)):
            return result[signature.index]
        return result


class TokenHelper(Helper):
    name = "token"
    args_length = ArgsLength.exact(1)

    async def run(self, module, h, interpreter):
        symbol = await interpreter.interpret_node(h.args[0])
        tokens = await module.token_list(interpreter)
        return find_token(tokens, symbol)

    async def run_eager(self, module, h, cache, handles):
        symbol = handles.evaluate(h.args[0])
        if isinstance(symbol, Placeholder) or handles.clients is None or handles.clients.fetcher is None:
            return None
        config = config_of(handles)
        tokens = await cache.resolve(
            BindingSpace.CACHE, f"token-list:{config.token_list_url}",
            lambda: fetch_token_list(handles.clients, config),
        )
        if not tokens:
            return None
        try:
            return find_token(tokens, symbol)
        except InvalidOperation:
            return None


class TokenBalanceHelper(Helper):
    name = "token.balance"
    args_length = ArgsLength.exact(2)

    async def run(self, module, h, interpreter):
        symbol = await interpreter.interpret_node(h.args[0])
        holder = await interpreter.interpret_node(h.args[1])
        token = find_token(await module.token_list(interpreter), symbol)
        chain = interpreter.clients.require('chain')
        return await chain.read_contract(token, ERC20_ABI, "balanceOf", [holder])


class TokenAmountHelper(Helper):
    name = "token.amount"
    args_length = ArgsLength.exact(2)

    async def run(self, module, h, interpreter):
        symbol = await interpreter.interpret_node(h.args[0])
        amount = await interpreter.interpret_node(h.args[1])
        if not is_number(amount):
            raise InvalidOperation(f"expected a number as amount, but got {Printer().pformat(amount)}")
        token = find_token(await module.token_list(interpreter), symbol)
        chain = interpreter.clients.require('chain')
        decimals = int(await chain.read_contract(token, ERC20_ABI, "decimals", []))
        return FixedPoint.from_python(amount).scale(10 ** decimals).truncate()


class EnsHelper(Helper):
    name = "ens"
    args_length = ArgsLength.exact(1)

    async def run(self, module, h, interpreter):
        name = await interpreter.interpret_node(h.args[0])
        address = await interpreter.clients.require('resolver').resolve(name)
        if not address:
            raise InvalidOperation(f"ENS name {name} not found")
        return address


class DateHelper(Helper):
    name = "date"
    args_length = ArgsLength.between(1, 2)

    async def run(self, module, h, interpreter):
        values = await interpreter.interpret_nodes(h.args)
        text = values[0]
        if not isinstance(text, str):
            raise InvalidOperation(f"expected an ISO date, but got {Printer().pformat(text)}")
        try:
            moment = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            raise InvalidOperation(f'invalid date "{text}"') from None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        offset = parse_offset(values[1]) if len(values) > 1 else 0
        return int(moment.timestamp()) + offset


class StdModule(Module):
    name = "std"
    loadable = ("org",)
    commands = {
        cmd.name: cmd for cmd in (
            LoadCommand(), SetCommand(), ExecCommand(), PrintCommand(), ExpectCommand(),
        )
    }
    helpers = {
        helper.name: helper for helper in (
            MeHelper(), GetHelper(), TokenHelper(), TokenBalanceHelper(),
            TokenAmountHelper(), EnsHelper(), DateHelper(),
        )
    }

    def __init__(self, registry, alias=None):
        super().__init__(registry, alias)
        self._tokens: Optional[list] = None

    async def token_list(self, interpreter) -> list:
        if self._tokens is None:
            self._tokens = await fetch_token_list(interpreter.clients, config_of(interpreter))
        return self._tokens
