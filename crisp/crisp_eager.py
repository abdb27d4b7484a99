"""
Eager execution: a speculative re-walk of a script that is being edited.

Every edit resubmits the (possibly partial) source. The walk calls each
command's ``run_eager`` hook instead of ``run``, writes into bindings of its
own and only ever shares the ``SpeculativeCache`` with other passes. The
bindings visible at the caret feed autocompletion.
"""
import asyncio
import os
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from crisp.crisp_datatypes import (
    Node, Program, Position, BlockExpression, CommandExpression, HelperFunctionExpression,
    StringLiteral, NumberLiteral, BoolLiteral, AddressLiteral, BytesLiteral,
    ArrayExpression, ArithmeticExpression, VariableIdentifier, ProbableIdentifier,
    Placeholder, iter_nodes,
)
from crisp.crisp_bindings import BindingSpace, BindingsManager, BindingsSnapshot
from crisp.crisp_errors import ExpressionError
from crisp.crisp_interpreter import apply_operator
from crisp.crisp_modules import Command, Helper, Module, ModuleRegistry, Mutator
from crisp.crisp_parser import parse_partial
from crisp.crisp_printer import Printer


class _NotFound:
    def __repr__(self):
        return "<not found>"


NOT_FOUND = _NotFound()


def _debug_enabled(config) -> bool:
    return bool(os.environ.get("CRISP_DEBUG") or getattr(config, 'debug', False))


class SpeculativeCache:
    """Process-wide, read-through and write-once store shared by eager passes.

    The first resolution of a key wins and is never fetched again. Concurrent
    resolutions of the same key share one in-flight fetch. Failed fetches are
    remembered as not found.
    """
    def __init__(self, trace: Optional[Callable[..., None]] = None):
        self._values: Dict[Tuple[BindingSpace, str], Any] = {}
        self._pending: Dict[Tuple[BindingSpace, str], asyncio.Future] = {}
        self._trace = trace
        self.hits = 0
        self.misses = 0

    def has(self, space: BindingSpace, key: str) -> bool:
        return (space, key) in self._values

    def get(self, space: BindingSpace, key: str, default: Any = None) -> Any:
        value = self._values.get((space, key), NOT_FOUND)
        return default if value is NOT_FOUND else value

    def put(self, space: BindingSpace, key: str, value: Any) -> Any:
        """Stores ``value`` unless the key is already set; returns the stored value."""
        return self._values.setdefault((space, key), value)

    async def resolve(self, space: BindingSpace, key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        k = (space, key)
        if k in self._values:
            self.hits += 1
            value = self._values[k]
            return None if value is NOT_FOUND else value
        fut = self._pending.get(k)
        if fut is None:
            self.misses += 1
            fut = asyncio.ensure_future(self._fetch(key, fetch))
            self._pending[k] = fut
            fut.add_done_callback(lambda f, k=k: self._settle(k, f))
        else:
            self.hits += 1
        # Shielded so that cancelling a superseded pass never aborts a shared fetch.
        value = await asyncio.shield(fut)
        return None if value is NOT_FOUND else value

    async def _fetch(self, key: str, fetch: Callable[[], Awaitable[Any]]) -> Any:
        try:
            value = await fetch()
        except Exception as e:
            if self._trace:
                self._trace("speculative fetch failed", key, repr(e))
            return NOT_FOUND
        return NOT_FOUND if value is None else value

    def _settle(self, k, fut: asyncio.Future):
        self._pending.pop(k, None)
        if not fut.cancelled():
            self._values.setdefault(k, fut.result())

    def __len__(self):
        return len(self._values)


class EagerHandles:
    """What an eager hook may use: isolated bindings, the eager registry and the cache."""
    def __init__(self, executor: 'EagerExecutor', bindings: BindingsManager, registry: ModuleRegistry):
        self.executor = executor
        self.bindings = bindings
        self.registry = registry
        self.module_stack: List[Module] = []

    @property
    def clients(self):
        return self.executor.clients

    @property
    def config(self):
        return self.executor.config

    @property
    def cache(self) -> SpeculativeCache:
        return self.executor.cache

    @property
    def active_module(self) -> Module:
        return self.module_stack[-1] if self.module_stack else self.registry.default

    def trace(self, *parts):
        self.executor._dbg(*parts)

    def resolve_command(self, c: CommandExpression) -> Optional[Tuple[Module, Command]]:
        if c.module:
            module = self.registry.get(c.module)
            command = module.get_command(c.name) if module else None
            return (module, command) if command else None
        for module in (self.active_module, self.registry.default):
            command = module.get_command(c.name)
            if command is not None:
                return module, command
        return None

    def resolve_helper(self, h: HelperFunctionExpression) -> Optional[Tuple[Module, Helper]]:
        for module in [self.active_module, self.registry.default] + list(self.registry.loaded):
            helper = module.get_helper(h.name)
            if helper is not None:
                return module, helper
        return None

    def placeholder(self, node: Node) -> Placeholder:
        return Placeholder(Printer().pformat(node))

    def evaluate(self, node: Node) -> Any:
        """Evaluates ``node`` without any I/O. Unknown values become placeholders."""
        return evaluate_sync(node, self.bindings, self.placeholder)

    async def resolve(self, node: Node) -> Any:
        """Like ``evaluate`` but lets helpers answer through their eager hooks."""
        match node:
            case HelperFunctionExpression():
                resolved = self.resolve_helper(node)
                if resolved is None:
                    return self.placeholder(node)
                module, helper = resolved
                try:
                    value = await helper.run_eager(module, node, self.cache, self)
                except Exception as e:
                    self.trace("eager helper failed", node.name, repr(e))
                    value = None
                return self.placeholder(node) if value is None else value
            case ArrayExpression(elements=elements):
                return [await self.resolve(e) for e in elements]
            case ArithmeticExpression(left=left, right=right):
                lhs, rhs = await self.resolve(left), await self.resolve(right)
                try:
                    return apply_operator(node, lhs, rhs)
                except ExpressionError:
                    return self.placeholder(node)
            case _:
                return self.evaluate(node)


def evaluate_sync(node: Node, bindings, placeholder: Callable[[Node], Placeholder]) -> Any:
    match node:
        case NumberLiteral(value=value):
            return value.to_python()
        case StringLiteral(value=value) | BoolLiteral(value=value) | AddressLiteral(value=value) | BytesLiteral(value=value):
            return value
        case ArrayExpression(elements=elements):
            return [evaluate_sync(e, bindings, placeholder) for e in elements]
        case ArithmeticExpression(left=left, right=right):
            try:
                return apply_operator(
                    node,
                    evaluate_sync(left, bindings, placeholder),
                    evaluate_sync(right, bindings, placeholder),
                )
            except ExpressionError:
                return placeholder(node)
        case VariableIdentifier(name=name):
            if bindings.has(BindingSpace.USER, name):
                return bindings.get(BindingSpace.USER, name)
            return placeholder(node)
        case ProbableIdentifier(value=value):
            if bindings.has(BindingSpace.ADDR, value):
                return bindings.get(BindingSpace.ADDR, value)
            return value
        case _:
            return placeholder(node)


class EagerResult:
    """Outcome of one eager pass."""
    def __init__(self, program: Program, snapshot: BindingsSnapshot, module: Module,
                 registry: ModuleRegistry, errors: list, generation: int):
        self.program = program
        self.snapshot = snapshot
        self.module = module
        self.registry = registry
        self.errors = errors
        self.generation = generation

    def __repr__(self):
        return f"<EagerResult gen={self.generation} module={self.module.contextual_name} errors={len(self.errors)}>"


class EagerExecutor:
    """Runs eager passes; a new submission supersedes the one in flight."""
    def __init__(self, modules: Dict[str, Type[Module]], clients=None, config=None,
                 cache: Optional[SpeculativeCache] = None, default_module: str = "std"):
        self.modules = modules
        self.clients = clients
        self.config = config
        self.cache = cache if cache is not None else SpeculativeCache(trace=self._dbg)
        self.default_module = default_module
        self.generation = 0
        self.last_result: Optional[EagerResult] = None
        self._task: Optional[asyncio.Task] = None

    def _dbg(self, *parts):
        if _debug_enabled(self.config):
            try:
                print("[DBG eager]", *parts, file=sys.stderr)
            except Exception:
                pass

    # =================================================================
    # Submission
    # =================================================================

    def submit(self, source: str, caret: Position) -> asyncio.Task:
        """Starts a pass for ``source``, cancelling the previous one if still running.

        The task resolves to the ``EagerResult``, or to ``None`` when a newer
        submission made it stale.
        """
        self.generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.ensure_future(self._run_generation(self.generation, source, caret))
        return self._task

    async def _run_generation(self, generation: int, source: str, caret: Position) -> Optional[EagerResult]:
        result = await self.run(source, caret, generation)
        if generation != self.generation:
            self._dbg("discarding stale eager result", generation)
            return None
        self.last_result = result
        return result

    async def run(self, source: str, caret: Position, generation: Optional[int] = None) -> EagerResult:
        program, errors = parse_partial(source)
        for err in errors:
            self._dbg("skipped malformed statement", err.message, err.loc)
        registry = ModuleRegistry(self.modules, self.default_module)
        handles = EagerHandles(self, BindingsManager(), registry)
        plan: Dict[int, Tuple[Module, Optional[Mutator]]] = {}
        await self._walk(program.body, handles, caret, plan)
        snapshot, module = self._replay(program, registry, caret, plan)
        return EagerResult(program, snapshot, module, registry, errors,
                           self.generation if generation is None else generation)

    # =================================================================
    # Phase 1: hooks
    # =================================================================

    def _apply(self, mutator: Optional[Mutator], bindings: BindingsManager):
        if mutator is None:
            return
        try:
            mutator(bindings)
        except Exception as e:
            self._dbg("eager mutator failed", repr(e))

    async def _walk(self, statements, handles: EagerHandles, caret: Position, plan):
        for stmt in statements:
            if not isinstance(stmt, CommandExpression) or stmt.loc is None:
                continue
            if stmt.loc.start.line >= caret.line:
                break
            resolved = handles.resolve_command(stmt)
            if resolved is None:
                self._dbg("unknown command", stmt.full_name)
                continue
            module, command = resolved
            try:
                mutator = await command.run_eager(module, stmt, handles.cache, handles, caret)
            except Exception as e:
                self._dbg("eager hook failed", stmt.full_name, repr(e))
                mutator = None
            plan[id(stmt)] = (module, mutator)

            blocks = [a for a in stmt.args if isinstance(a, BlockExpression)]
            if not blocks:
                self._apply(mutator, handles.bindings)
                continue
            for block in blocks:
                handles.module_stack.append(module)
                try:
                    with handles.bindings.scoped():
                        self._apply(mutator, handles.bindings)
                        await self._walk(block.body, handles, caret, plan)
                finally:
                    handles.module_stack.pop()

    # =================================================================
    # Phase 2: replay up to the caret
    # =================================================================

    def _replay(self, program: Program, registry: ModuleRegistry, caret: Position, plan):
        bindings = BindingsManager()
        stack: List[Module] = []
        captured = self._replay_body(program.body, bindings, stack, registry, caret, plan)
        if captured is None:
            captured = (bindings.snapshot(), registry.default)
        return captured

    def _replay_body(self, statements, bindings: BindingsManager, stack: List[Module],
                     registry: ModuleRegistry, caret: Position, plan):
        for stmt in statements:
            active = stack[-1] if stack else registry.default
            if stmt.loc is not None and stmt.loc.start.line >= caret.line:
                return bindings.snapshot(), active
            module, mutator = plan.get(id(stmt), (active, None))
            blocks = [a for a in getattr(stmt, 'args', ()) if isinstance(a, BlockExpression)]
            if not blocks:
                self._apply(mutator, bindings)
                continue
            for block in blocks:
                captured = None
                stack.append(module)
                try:
                    with bindings.scoped():
                        self._apply(mutator, bindings)
                        captured = self._replay_body(block.body, bindings, stack, registry, caret, plan)
                        if captured is None and block.loc is not None and caret < block.loc.end:
                            captured = (bindings.snapshot(), module)
                finally:
                    stack.pop()
                if captured is not None:
                    return captured
        return None

    # =================================================================
    # Completions
    # =================================================================

    async def get_completions(self, source: str, caret: Position) -> List[str]:
        result = await self.run(source, caret)
        return self.completions(source, caret, result)

    def completions(self, source: str, caret: Position, result: EagerResult) -> List[str]:
        lines = source.split('\n')
        line = lines[caret.line - 1] if 0 < caret.line <= len(lines) else ''
        prefix = line[:max(caret.column - 1, 0)]
        words = prefix.split()
        current = '' if not prefix or prefix[-1].isspace() else words.pop()

        if not words:
            items = self._command_names(result)
        elif current.startswith('$'):
            items = result.snapshot.all_identifiers([BindingSpace.USER])
        elif current.startswith('@'):
            items = self._helper_names(result)
        else:
            items = self._argument_items(words, current, caret, result)

        out, seen = [], set()
        for item in items:
            if item.startswith(current) and item not in seen:
                seen.add(item)
                out.append(item)
        return out

    def _command_names(self, result: EagerResult) -> List[str]:
        registry = result.registry
        names = list(result.module.commands)
        names += [n for n in registry.default.commands if n not in names]
        for module in registry.loaded:
            if module is not registry.default:
                names += [f"{module.contextual_name}:{n}" for n in module.commands]
        return names

    def _helper_names(self, result: EagerResult) -> List[str]:
        names = []
        for module in [result.module] + list(result.registry.loaded):
            names += [f"@{n}" for n in module.helpers]
        return names

    def _argument_items(self, words: List[str], current: str, caret: Position, result: EagerResult) -> List[str]:
        name = words[0]
        module_name, _, command_name = name.rpartition(':')
        c = CommandExpression(command_name, module=module_name or None)
        handles = EagerHandles(self, BindingsManager(), result.registry)
        handles.module_stack.append(result.module)
        resolved = handles.resolve_command(c)
        if resolved is None:
            return []
        _, command = resolved
        if current.startswith('--'):
            return [f"--{opt}" for opt in command.opts]

        arg_index = 0
        rest = iter(words[1:])
        for word in rest:
            if word.startswith('--'):
                next(rest, None)
                continue
            arg_index += 1
        node = self._node_at(result.program, caret)
        return command.completion_items(arg_index, node, result.snapshot)

    def _node_at(self, program: Program, caret: Position) -> Optional[CommandExpression]:
        found = None
        for node in iter_nodes(program):
            if isinstance(node, CommandExpression) and node.loc is not None and node.loc.start.line == caret.line:
                found = node
        return found
