"""
Scoped, multi-space binding store.
"""
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from crisp.crisp_errors import BindingExists


class BindingSpace(Enum):
    """Orthogonal namespaces. The same key may live in several of them."""
    ADDR = "addr"
    ABI = "abi"
    USER = "user"
    DATA_PROVIDER = "data_provider"
    CACHE = "cache"


class Scope:
    """A binding container chained to an optional parent.

    Lookups walk up to the root and return the nearest binding; writes always
    land on the scope they target.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.parent = parent
        self.bindings: Dict[BindingSpace, Dict[str, Any]] = {space: {} for space in BindingSpace}

    def find_owner(self, space: BindingSpace, key: str) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if key in scope.bindings[space]:
                return scope
            scope = scope.parent
        return None

    def chain(self) -> List['Scope']:
        """This scope followed by its ancestors, nearest first."""
        out = []
        scope = self
        while scope is not None:
            out.append(scope)
            scope = scope.parent
        return out

    @property
    def depth(self) -> int:
        return len(self.chain()) - 1

    def __repr__(self):
        sizes = {s.name: len(b) for s, b in self.bindings.items() if b}
        return f"<Scope depth={self.depth} {sizes}>"


def _identifiers(chain: Iterable[Scope], spaces: Iterable[BindingSpace]) -> List[str]:
    seen = set()
    out = []
    for scope in chain:
        for space in spaces:
            for key in scope.bindings[space]:
                if key not in seen:
                    seen.add(key)
                    out.append(key)
    return out


class BindingsManager:
    """Owns the scope stack of one interpretation.

    ``enter_scope`` and ``exit_scope`` must be paired; ``scoped()`` pairs them
    for the caller, including on error paths.
    """
    def __init__(self, root: Optional[Scope] = None):
        self.root = root or Scope()
        self.current = self.root

    def enter_scope(self) -> Scope:
        self.current = Scope(self.current)
        return self.current

    def exit_scope(self, expected: Optional[Scope] = None) -> Scope:
        if self.current is self.root:
            raise RuntimeError("cannot exit the root scope")
        if expected is not None and expected is not self.current:
            raise RuntimeError("unbalanced scope exit")
        leaving = self.current
        self.current = leaving.parent
        return leaving

    @contextmanager
    def scoped(self):
        scope = self.enter_scope()
        try:
            yield scope
        finally:
            self.exit_scope(scope)

    def get(self, space: BindingSpace, key: str, scope: Optional[Scope] = None, default: Any = None) -> Any:
        owner = (scope or self.current).find_owner(space, key)
        if owner is None:
            return default
        return owner.bindings[space][key]

    def set(self, space: BindingSpace, key: str, value: Any, scope: Optional[Scope] = None, *, guard: bool = False):
        target = scope or self.current
        if guard and key in target.bindings[space]:
            raise BindingExists(space, key)
        target.bindings[space][key] = value

    def has(self, space: BindingSpace, key: str, scope: Optional[Scope] = None, *, local: bool = False) -> bool:
        scope = scope or self.current
        if local:
            return key in scope.bindings[space]
        return scope.find_owner(space, key) is not None

    def all_identifiers(self, spaces: Optional[Iterable[BindingSpace]] = None, scope: Optional[Scope] = None) -> List[str]:
        """Visible identifiers, nearest scope first, each reported once."""
        spaces = list(spaces) if spaces is not None else list(BindingSpace)
        return _identifiers((scope or self.current).chain(), spaces)

    def snapshot(self, scope: Optional[Scope] = None) -> 'BindingsSnapshot':
        """Freezes the bindings visible from ``scope`` (the current scope by default)."""
        flat: Dict[BindingSpace, Dict[str, Any]] = {space: {} for space in BindingSpace}
        for s in reversed((scope or self.current).chain()):
            for space, bindings in s.bindings.items():
                flat[space].update(bindings)
        order = {space: _identifiers((scope or self.current).chain(), [space]) for space in BindingSpace}
        return BindingsSnapshot(flat, order)


class BindingsSnapshot:
    """A read-only view of the bindings visible at one point of a script."""
    def __init__(self, bindings: Dict[BindingSpace, Dict[str, Any]], order: Dict[BindingSpace, List[str]]):
        self._bindings = bindings
        self._order = order

    def get(self, space: BindingSpace, key: str, default: Any = None) -> Any:
        return self._bindings[space].get(key, default)

    def has(self, space: BindingSpace, key: str) -> bool:
        return key in self._bindings[space]

    def all_identifiers(self, spaces: Optional[Iterable[BindingSpace]] = None) -> List[str]:
        spaces = list(spaces) if spaces is not None else list(BindingSpace)
        seen = set()
        out = []
        for space in spaces:
            for key in self._order[space]:
                if key not in seen:
                    seen.add(key)
                    out.append(key)
        return out

    def values(self, space: BindingSpace) -> List[Any]:
        return [self._bindings[space][k] for k in self._order[space]]
