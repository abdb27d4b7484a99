"""
A pretty-printer for CRISP syntax trees and actions.
"""
import collections.abc
from decimal import Decimal

from crisp.crisp_datatypes import (
    FixedPoint,
    Program, BlockExpression, CommandExpression, CommandOpt, HelperFunctionExpression,
    StringLiteral, NumberLiteral, BoolLiteral, AddressLiteral, BytesLiteral,
    ArrayExpression, ArithmeticExpression, VariableIdentifier, ProbableIdentifier,
    Placeholder, TransactionAction, BatchAction,
)


class Printer:
    """Formats CRISP nodes back into valid source, and actions into readable text."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            Decimal: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            FixedPoint: self._pformat_primitive,
            Placeholder: self._pformat_placeholder,
            Program: self._pformat_program,
            BlockExpression: self._pformat_block,
            CommandExpression: self._pformat_command,
            CommandOpt: self._pformat_opt,
            HelperFunctionExpression: self._pformat_helper,
            StringLiteral: self._pformat_string_literal,
            NumberLiteral: self._pformat_number_literal,
            BoolLiteral: lambda o, l: self._pformat_bool(o.value, l),
            AddressLiteral: lambda o, l: o.value,
            BytesLiteral: lambda o, l: o.value,
            ArrayExpression: self._pformat_array,
            ArithmeticExpression: self._pformat_arithmetic,
            VariableIdentifier: lambda o, l: o.name,
            ProbableIdentifier: lambda o, l: o.value,
            TransactionAction: self._pformat_transaction,
            BatchAction: self._pformat_batch,
        }

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_str(self, obj, level):
        return '"' + obj.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n') + '"'

    def _pformat_bool(self, obj, level):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj, level):
        return 'none'

    def _pformat_placeholder(self, obj, level):
        return f"<{obj.source}>"

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(x, level) for x in obj) + "]"

    def _pformat_dict(self, obj, level):
        items = ", ".join(f"{k}: {self.pformat(v, level)}" for k, v in obj.items())
        return "{" + items + "}"

    # Source

    def _pformat_program(self, obj, level):
        return "\n".join(self.pformat(stmt, level) for stmt in obj.body)

    def _pformat_block(self, obj, level):
        indent = self._indent_char * (level + 1)
        inner = [indent + self.pformat(stmt, level + 1) for stmt in obj.body]
        closing = self._indent_char * level + ")"
        return "\n".join(["("] + inner + [closing])

    def _pformat_command(self, obj, level):
        parts = [obj.full_name]
        parts += [self.pformat(arg, level) for arg in obj.args]
        parts += [self.pformat(opt, level) for opt in obj.opts]
        return " ".join(parts)

    def _pformat_opt(self, obj, level):
        return f"--{obj.name} {self.pformat(obj.value, level)}"

    def _pformat_helper(self, obj, level):
        if not obj.args:
            return f"@{obj.name}"
        return f"@{obj.name}(" + ", ".join(self.pformat(a, level) for a in obj.args) + ")"

    def _pformat_string_literal(self, obj, level):
        return self._pformat_str(obj.value, level)

    def _pformat_number_literal(self, obj, level):
        value = obj.value.to_python()
        return format(value, "f") if isinstance(value, Decimal) else str(value)

    def _pformat_array(self, obj, level):
        return "[" + ", ".join(self.pformat(e, level) for e in obj.elements) + "]"

    def _pformat_arithmetic(self, obj, level):
        return f"({self.pformat(obj.left, level)} {obj.operator} {self.pformat(obj.right, level)})"

    # Actions

    def _pformat_transaction(self, obj, level):
        indent = self._indent_char * level
        lines = [f"{indent}to: {obj.to}", f"{indent}data: {obj.data}"]
        if obj.value:
            lines.append(f"{indent}value: {obj.value}")
        return "\n".join(lines)

    def _pformat_batch(self, obj, level):
        indent = self._indent_char * level
        lines = [f"{indent}batch:"]
        for action in obj.actions:
            lines.append(self.pformat(action, level + 1))
        if obj.transaction is not None:
            lines.append(f"{indent}via:")
            lines.append(self.pformat(obj.transaction, level + 1))
        return "\n".join(lines)
