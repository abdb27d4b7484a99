"""
Error taxonomy for CRISP scripts.

Every fatal error carries the node that raised it (when known) and that
node's location so the runtime can point at the offending source text.
"""
from typing import List, Optional

from crisp.crisp_datatypes import Location, Node


class CrispError(Exception):
    """Base class for every error a script can produce."""
    name = "CrispError"

    def __init__(self, node: Optional[Node], message: str, loc: Optional[Location] = None):
        self.node = node
        self.message = message
        self.loc = loc if loc is not None else getattr(node, 'loc', None)
        super().__init__(message)

    def __str__(self):
        return f"{self.name}: {self.message}"


class StructuralParseError(CrispError):
    """A malformed statement. It has a span but no node."""
    name = "StructuralParseError"

    def __init__(self, message: str, loc: Optional[Location] = None):
        super().__init__(None, message, loc)


class ParseError(CrispError):
    """Every structural error found in one parse pass."""
    name = "ParseError"

    def __init__(self, errors: List[StructuralParseError]):
        self.errors = list(errors)
        first = self.errors[0] if self.errors else None
        message = "; ".join(e.message for e in self.errors) or "invalid script"
        super().__init__(None, message, first.loc if first else None)


class ResolutionError(CrispError):
    name = "ResolutionError"


class ArgumentCountError(CrispError):
    name = "ArgumentCountError"

    def __init__(self, node: Optional[Node], expected: str, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            node,
            f"invalid number of arguments. Expected {expected} argument(s), but got {actual}",
        )


class ExpressionError(CrispError):
    name = "ExpressionError"


class CommandError(CrispError):
    name = "CommandError"


class HelperFunctionError(CrispError):
    name = "HelperFunctionError"


class InvalidOperation(Exception):
    """Raised by command and helper code that has no node at hand.

    The interpreter re-raises it as a ``CommandError`` or a
    ``HelperFunctionError`` bound to the node being executed.
    """


class BindingExists(Exception):
    """A guarded write hit a key already bound in the same scope."""

    def __init__(self, space, key):
        self.space = space
        self.key = key
        super().__init__(f"{key!r} is already defined in {space.name}")
