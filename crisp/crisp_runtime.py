# crisp_runtime.py

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Type

from crisp.crisp_bindings import BindingSpace, BindingsManager
from crisp.crisp_clients import Clients, HttpContentFetcher
from crisp.crisp_config import CrispConfig
from crisp.crisp_datatypes import Location, Position, Program
from crisp.crisp_eager import EagerExecutor, EagerResult
from crisp.crisp_errors import CrispError
from crisp.crisp_interpreter import Interpreter, InterpreterContext
from crisp.crisp_modules import Module, ModuleRegistry
from crisp.crisp_org import OrgModule
from crisp.crisp_parser import parse
from crisp.crisp_std import StdModule

DEFAULT_MODULES: Dict[str, Type[Module]] = {
    "std": StdModule,
    "org": OrgModule,
}


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    actions: List[Any] = field(default_factory=list)
    error_message: Optional[str] = None
    error_location: Optional[Location] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_location is not None and not msg.startswith("Error on line "):
            return f"Error on line {self.error_location.line}, col {self.error_location.column}: {msg}"
        return msg


def seed_bindings(bindings: BindingsManager, initial: Optional[Mapping] = None):
    """Copies ``initial`` into the root scope of ``bindings``.

    Keys are either a ``BindingSpace`` mapping to a dict of entries, or a
    plain variable name (with or without the leading ``$``) bound as a user
    variable.
    """
    for key, value in (initial or {}).items():
        if isinstance(key, BindingSpace):
            for name, v in value.items():
                bindings.set(key, name, v, bindings.root)
        else:
            name = key if key.startswith('$') else f"${key}"
            bindings.set(BindingSpace.USER, name, value, bindings.root)


def _as_position(caret) -> Position:
    return caret if isinstance(caret, Position) else Position(*caret)


class ScriptRunner:
    """Parses and interprets CRISP scripts, and serves editor tooling.

    ``handle_script`` keeps one session (bindings and loaded modules) across
    calls so a REPL can build on earlier lines. ``interpret`` always starts
    from a fresh context.
    """

    def __init__(self, clients: Optional[Clients] = None, config: Optional[CrispConfig] = None,
                 modules: Optional[Dict[str, Type[Module]]] = None):
        self.config = config or CrispConfig()
        self.clients = clients or Clients(fetcher=HttpContentFetcher.from_config(self.config))
        self.modules = dict(modules or DEFAULT_MODULES)
        self.eager = EagerExecutor(self.modules, self.clients, self.config)
        self.reset()

    def reset(self):
        """Forgets every binding and loaded module of the current session."""
        self.bindings = BindingsManager()
        self.registry = ModuleRegistry(self.modules)
        self.last_interpreter: Optional[Interpreter] = None

    def _new_context(self, bindings: BindingsManager, registry: ModuleRegistry) -> InterpreterContext:
        return InterpreterContext(bindings, registry, self.clients, self.config)

    # ===================================================================
    # Core entry points
    # ===================================================================

    def parse(self, source: str) -> Program:
        return parse(source)

    async def interpret(self, program: Program, initial_bindings: Optional[Mapping] = None) -> List[Any]:
        """Interprets ``program`` from scratch and returns its actions. Errors propagate."""
        bindings = BindingsManager()
        seed_bindings(bindings, initial_bindings)
        registry = ModuleRegistry(self.modules)
        interpreter = Interpreter(program, self._new_context(bindings, registry))
        self.last_interpreter = interpreter
        return await interpreter.interpret()

    def get_module(self, name: str) -> Optional[Module]:
        """Returns the loaded module instance for a name or alias, from the latest run."""
        if self.last_interpreter is not None:
            return self.last_interpreter.context.registry.get(name)
        return self.registry.get(name)

    # ===================================================================
    # Editor tooling
    # ===================================================================

    def submit_eager(self, source: str, caret) -> 'asyncio.Task[Optional[EagerResult]]':
        return self.eager.submit(source, _as_position(caret))

    async def get_completions(self, source: str, caret) -> List[str]:
        return await self.eager.get_completions(source, _as_position(caret))

    # ===================================================================
    # Script execution
    # ===================================================================

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            content = lines[i - 1]
            out.append(f"{prefix} {ln} | {content}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_error(self, e: Exception, source: str, node=None) -> tuple[str, Optional[Location]]:
        loc = None
        match e:
            case CrispError():
                msg = str(e)
                loc = e.loc
            case _:
                msg = f"InternalError: {e}"

        if loc is None and node is not None:
            loc = node.loc

        if loc is not None:
            context = self._source_context(source, loc.line, loc.column)
            if context:
                msg = f"{msg}\n{context}"
        return msg, loc

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script. Never raises."""
        context = self._new_context(self.bindings, self.registry)
        try:
            program = self.parse(source_code)
            interpreter = Interpreter(program, context)
            self.last_interpreter = interpreter
            actions = await interpreter.interpret()
            return ExecutionResult(
                status='success',
                actions=actions,
                side_effects=context.side_effects,
            )
        except Exception as e:
            err_msg, err_loc = self._format_error(e, source_code, context.current_node)
            context.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_location=err_loc,
                side_effects=context.side_effects,
            )
