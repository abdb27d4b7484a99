"""
The module, command and helper protocol.

A module groups commands and helpers under a name. Commands turn a
``CommandExpression`` into actions; helpers turn a ``HelperFunctionExpression``
into a single value. Both expose a speculative ``run_eager`` hook (used while
a script is being edited) and a pure ``completion_items`` hook.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TYPE_CHECKING

from crisp.crisp_datatypes import CommandExpression, HelperFunctionExpression, Node
from crisp.crisp_errors import ArgumentCountError, InvalidOperation

if TYPE_CHECKING:
    from crisp.crisp_bindings import BindingsManager, BindingsSnapshot
    from crisp.crisp_interpreter import Interpreter

Mutator = Callable[['BindingsManager'], None]


class ArgsLength:
    """Accepted number of positional arguments: ``minimum..maximum`` (``None`` is unbounded)."""
    def __init__(self, minimum: int = 0, maximum: Optional[int] = None):
        self.minimum = minimum
        self.maximum = maximum

    @classmethod
    def exact(cls, n: int) -> 'ArgsLength':
        return cls(n, n)

    @classmethod
    def at_least(cls, n: int) -> 'ArgsLength':
        return cls(n, None)

    @classmethod
    def at_most(cls, n: int) -> 'ArgsLength':
        return cls(0, n)

    @classmethod
    def between(cls, a: int, b: int) -> 'ArgsLength':
        return cls(a, b)

    def matches(self, n: int) -> bool:
        if n < self.minimum:
            return False
        return self.maximum is None or n <= self.maximum

    def describe(self) -> str:
        if self.maximum is None:
            return f"at least {self.minimum}"
        if self.minimum == self.maximum:
            return str(self.minimum)
        if self.minimum == 0:
            return f"at most {self.maximum}"
        return f"between {self.minimum} and {self.maximum}"

    def check(self, node: Node, n: Optional[int] = None):
        if n is None:
            n = len(getattr(node, 'args', ()))
        if not self.matches(n):
            raise ArgumentCountError(node, self.describe(), n)

    def __repr__(self):
        return f"ArgsLength({self.describe()})"


class Command(ABC):
    name: str = ""
    args_length: ArgsLength = ArgsLength.at_least(0)
    opts: Tuple[str, ...] = ()

    @abstractmethod
    async def run(self, module: 'Module', c: CommandExpression, interpreter: 'Interpreter') -> list:
        """Executes the command and returns the actions it produced."""

    async def run_eager(self, module: 'Module', c: CommandExpression, cache, handles, caret) -> Optional[Mutator]:
        """Speculative counterpart of ``run``.

        Must never perform real side effects. It may fetch through ``cache``
        and returns an optional mutator applied to the eager bindings.
        """
        return None

    def completion_items(self, arg_index: int, c: Optional[CommandExpression], bindings: 'BindingsSnapshot') -> List[str]:
        return []


class Helper(ABC):
    name: str = ""
    args_length: ArgsLength = ArgsLength.at_least(0)

    @abstractmethod
    async def run(self, module: 'Module', h: HelperFunctionExpression, interpreter: 'Interpreter') -> Any:
        """Evaluates the helper to a single value."""

    async def run_eager(self, module: 'Module', h: HelperFunctionExpression, cache, handles) -> Any:
        """Speculative value of the helper, or ``None`` when it cannot be known yet."""
        return None

    def completion_items(self, arg_index: int, h: Optional[HelperFunctionExpression], bindings: 'BindingsSnapshot') -> List[str]:
        return []


class Module:
    """Base class of every loadable module.

    Subclasses declare ``name``, their ``commands`` and ``helpers`` tables and
    the sibling modules they may ``load``. One instance exists per
    interpretation, so instances may carry mutable state.
    """
    name: str = ""
    commands: Dict[str, Command] = {}
    helpers: Dict[str, Helper] = {}
    loadable: Tuple[str, ...] = ()

    def __init__(self, registry: 'ModuleRegistry', alias: Optional[str] = None):
        self.registry = registry
        self.alias = alias

    @property
    def contextual_name(self) -> str:
        return self.alias or self.name

    def get_command(self, name: str) -> Optional[Command]:
        return self.commands.get(name)

    def get_helper(self, name: str) -> Optional[Helper]:
        return self.helpers.get(name)

    def __repr__(self):
        alias = f" as {self.alias}" if self.alias else ""
        return f"<Module {self.name}{alias}>"


class ModuleRegistry:
    """Modules available to one interpretation and the ones it has loaded."""
    def __init__(self, available: Dict[str, Type[Module]], default: str = "std"):
        self.available = dict(available)
        self.loaded: List[Module] = []
        self.default_name = default
        self.default = self.load(default)

    def load(self, name: str, alias: Optional[str] = None) -> Module:
        cls = self.available.get(name)
        if cls is None:
            raise InvalidOperation(f'module "{name}" not found')
        for mod in self.loaded:
            if mod.name == name:
                raise InvalidOperation(f'module "{name}" already loaded')
            if alias and alias in (mod.name, mod.alias):
                raise InvalidOperation(f'alias "{alias}" already in use')
        module = cls(self, alias)
        self.loaded.append(module)
        return module

    def get(self, name_or_alias: str) -> Optional[Module]:
        for mod in self.loaded:
            if mod.alias == name_or_alias:
                return mod
        for mod in self.loaded:
            if mod.name == name_or_alias and mod.alias is None:
                return mod
        return None

    def is_loaded(self, name: str) -> bool:
        return any(mod.name == name for mod in self.loaded)
