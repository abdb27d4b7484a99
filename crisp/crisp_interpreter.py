"""
The CRISP interpreter: walks a Program and accumulates actions.
"""
import asyncio
import os
import sys
from decimal import Decimal
from typing import Any, Callable, List, Optional

from crisp.crisp_datatypes import (
    Node, Program, BlockExpression, CommandExpression, HelperFunctionExpression,
    StringLiteral, NumberLiteral, BoolLiteral, AddressLiteral, BytesLiteral,
    ArrayExpression, ArithmeticExpression, VariableIdentifier, ProbableIdentifier,
    FixedPoint,
)
from crisp.crisp_bindings import BindingSpace, BindingsManager, Scope
from crisp.crisp_errors import (
    CommandError, ExpressionError, HelperFunctionError, InvalidOperation, ResolutionError,
)
from crisp.crisp_modules import Command, Helper, Module, ModuleRegistry
from crisp.crisp_printer import Printer

# Decimals kept by a non-terminating division.
DIVISION_PLACES = 18


def is_number(value: Any) -> bool:
    return isinstance(value, (int, Decimal)) and not isinstance(value, bool)


def apply_operator(node: ArithmeticExpression, left: Any, right: Any):
    """Applies ``node.operator`` exactly.

    Integers stay integers and ``/`` between them truncates toward zero.
    Fractional operands are computed as fixed-point numbers; a fractional
    quotient that does not terminate is truncated to ``DIVISION_PLACES``.
    """
    if not is_number(left):
        raise ExpressionError(node, f'invalid left operand. Expected a number but got {Printer().pformat(left)}')
    if not is_number(right):
        raise ExpressionError(node, f'invalid right operand. Expected a number but got {Printer().pformat(right)}')

    lhs, rhs = FixedPoint.from_python(left), FixedPoint.from_python(right)
    match node.operator:
        case '+':
            result = lhs + rhs
        case '-':
            result = lhs - rhs
        case '*':
            result = lhs * rhs
        case '/':
            if rhs.mantissa == 0:
                raise ExpressionError(node, "invalid operation. Can't divide by zero")
            if isinstance(left, int) and isinstance(right, int):
                quotient = abs(left) // abs(right)
                return quotient if (left < 0) == (right < 0) else -quotient
            result = lhs.divide(rhs, DIVISION_PLACES)
        case '^':
            if not isinstance(right, int) or right < 0:
                raise ExpressionError(
                    node, f"invalid exponent. Expected a non-negative integer but got {right}"
                )
            result = lhs ** right
        case op:
            raise ExpressionError(node, f'unknown operator "{op}"')
    return result.to_python()


class InterpreterContext:
    """Everything one interpretation reads and writes, passed explicitly."""
    def __init__(
        self,
        bindings: BindingsManager,
        registry: ModuleRegistry,
        clients=None,
        config=None,
    ):
        self.bindings = bindings
        self.registry = registry
        self.clients = clients
        self.config = config
        self.module_stack: List[Module] = []
        self.entity_stack: List[Any] = []
        self.side_effects: List[dict] = []
        self.current_node: Optional[Node] = None


class Interpreter:
    """Runs a Program in real mode.

    ``state`` moves from ``init`` to ``running`` and ends as ``done`` or
    ``failed``. Any error aborts the whole run; no partial action list is
    ever returned.
    """
    def __init__(self, program: Program, context: InterpreterContext):
        self.program = program
        self.context = context
        self.state = 'init'
        self.actions: List[Any] = []

    @property
    def bindings(self) -> BindingsManager:
        return self.context.bindings

    @property
    def clients(self):
        return self.context.clients

    @property
    def config(self):
        return self.context.config

    @property
    def active_module(self) -> Module:
        stack = self.context.module_stack
        return stack[-1] if stack else self.context.registry.default

    def _dbg(self, *parts):
        if os.environ.get("CRISP_DEBUG") or getattr(self.config, 'debug', False):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def log(self, message: str, topic: str = 'stdout'):
        self.context.side_effects.append({'topics': [topic], 'message': message})

    def get_module(self, name: str) -> Optional[Module]:
        return self.context.registry.get(name)

    def load_module(self, name: str, alias: Optional[str] = None) -> Module:
        return self.context.registry.load(name, alias)

    async def interpret(self) -> List[Any]:
        self.state = 'running'
        try:
            actions = []
            for statement in self.program.body:
                actions.extend(await self.interpret_node(statement))
        except BaseException:
            self.state = 'failed'
            raise
        self.state = 'done'
        self.actions = actions
        return actions

    async def interpret_nodes(self, nodes, parallel: bool = False, treat_as_literal: bool = False) -> List[Any]:
        if parallel:
            tasks = [asyncio.ensure_future(self.interpret_node(n, treat_as_literal)) for n in nodes]
            try:
                return list(await asyncio.gather(*tasks))
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise
        return [await self.interpret_node(n, treat_as_literal) for n in nodes]

    async def interpret_node(self, node: Node, treat_as_literal: bool = False) -> Any:
        match node:
            case CommandExpression():
                return await self._run_command(node)
            case HelperFunctionExpression():
                return await self._run_helper(node)
            case NumberLiteral(value=value):
                return value.to_python()
            case StringLiteral(value=value) | BoolLiteral(value=value) | AddressLiteral(value=value) | BytesLiteral(value=value):
                return value
            case ArrayExpression(elements=elements):
                return await self.interpret_nodes(elements, parallel=True, treat_as_literal=treat_as_literal)
            case ArithmeticExpression(left=left, right=right):
                lhs, rhs = await self.interpret_nodes([left, right], parallel=True)
                return apply_operator(node, lhs, rhs)
            case VariableIdentifier(name=name):
                if not self.bindings.has(BindingSpace.USER, name):
                    raise ExpressionError(node, f"undefined variable {name}")
                return self.bindings.get(BindingSpace.USER, name)
            case ProbableIdentifier(value=value):
                if treat_as_literal:
                    return value
                return self.bindings.get(BindingSpace.ADDR, value, default=value)
            case BlockExpression():
                return await self.interpret_block(node, self.active_module)
            case _:
                raise ExpressionError(node, f"cannot evaluate {type(node).__name__}")

    async def interpret_block(
        self,
        block: BlockExpression,
        module: Module,
        setup: Optional[Callable[[Scope], None]] = None,
    ) -> List[Any]:
        """Runs ``block`` in a child scope with ``module`` as the active module.

        ``setup`` receives the new scope before the first statement runs.
        """
        actions = []
        self.context.module_stack.append(module)
        try:
            with self.bindings.scoped() as scope:
                if setup is not None:
                    setup(scope)
                for statement in block.body:
                    actions.extend(await self.interpret_node(statement))
        finally:
            self.context.module_stack.pop()
        return actions

    # =================================================================
    # Dispatch
    # =================================================================

    def resolve_command(self, c: CommandExpression) -> tuple[Module, Command]:
        registry = self.context.registry
        if c.module:
            module = registry.get(c.module)
            if module is None:
                raise ResolutionError(c, f'module "{c.module}" not found')
            command = module.get_command(c.name)
            if command is None:
                raise ResolutionError(c, f'command "{c.full_name}" not found')
            return module, command
        for module in (self.active_module, registry.default):
            command = module.get_command(c.name)
            if command is not None:
                return module, command
        raise ResolutionError(c, f'command "{c.name}" not found')

    def resolve_helper(self, h: HelperFunctionExpression) -> tuple[Module, Helper]:
        registry = self.context.registry
        candidates = [self.active_module, registry.default] + list(registry.loaded)
        for module in candidates:
            helper = module.get_helper(h.name)
            if helper is not None:
                return module, helper
        raise ResolutionError(h, f'helper "@{h.name}" not found')

    async def _run_command(self, c: CommandExpression) -> List[Any]:
        module, command = self.resolve_command(c)
        command.args_length.check(c)
        for opt in c.opts:
            if opt.name not in command.opts:
                raise CommandError(c, f'unknown option "--{opt.name}"')
        self.context.current_node = c
        self._dbg("command", c.full_name, "module", module.contextual_name)
        try:
            actions = await command.run(module, c, self)
        except InvalidOperation as e:
            raise CommandError(c, str(e)) from e
        return list(actions or [])

    async def _run_helper(self, h: HelperFunctionExpression) -> Any:
        module, helper = self.resolve_helper(h)
        helper.args_length.check(h)
        self.context.current_node = h
        try:
            return await helper.run(module, h, self)
        except InvalidOperation as e:
            raise HelperFunctionError(h, str(e)) from e

    async def get_opt(self, c: CommandExpression, name: str, default: Any = None, treat_as_literal: bool = False) -> Any:
        opt = c.get_opt(name)
        if opt is None:
            return default
        return await self.interpret_node(opt.value, treat_as_literal)
