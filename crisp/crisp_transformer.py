"""
Transforms the raw Lark parse tree into the semantic AST of crisp_datatypes.
"""
import re

from lark import Token, Transformer, v_args
from lark.exceptions import VisitError

from crisp.crisp_datatypes import (
    Location, Position, FixedPoint, TIME_UNITS,
    Program, BlockExpression, CommandExpression, CommandOpt, HelperFunctionExpression,
    StringLiteral, NumberLiteral, BoolLiteral, AddressLiteral, BytesLiteral,
    ArrayExpression, ArithmeticExpression, VariableIdentifier, ProbableIdentifier,
)
from crisp.crisp_errors import StructuralParseError

COMMAND_NAME_RE = re.compile(r'^(?:([a-zA-Z-]{1,63}):)?([a-zA-Z-]{1,63})$')
HEX_RE = re.compile(r'^0x[0-9a-fA-F]*$')

_ESCAPES = {'n': '\n', 't': '\t', 'r': '\r', '0': '\0'}


def loc_from_meta(meta) -> Location:
    if getattr(meta, 'empty', True):
        return Location(Position(1, 1), Position(1, 1), 0, 0)
    return Location(
        Position(meta.line, meta.column),
        Position(meta.end_line, meta.end_column),
        meta.start_pos,
        meta.end_pos,
    )


def loc_from_token(tok: Token) -> Location:
    return Location(
        Position(tok.line, tok.column),
        Position(tok.end_line, tok.end_column),
        tok.start_pos,
        tok.end_pos,
    )


def loc_between(first: Token, last: Token) -> Location:
    return Location(
        Position(first.line, first.column),
        Position(last.end_line, last.end_column),
        first.start_pos,
        last.end_pos,
    )


def decode_string(text: str) -> str:
    body = text[1:-1]
    return re.sub(r'\\(.)', lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


@v_args(meta=True)
class CrispTransformer(Transformer):
    def start(self, meta, children):
        return Program(tuple(children), loc=loc_from_meta(meta))

    def block(self, meta, children):
        return BlockExpression(tuple(children), loc=loc_from_meta(meta))

    def command(self, meta, children):
        name_tok, *items = children
        loc = loc_from_meta(meta)
        m = COMMAND_NAME_RE.match(str(name_tok))
        if not m or name_tok.endswith('-'):
            raise StructuralParseError(f'invalid command name "{name_tok}"', loc_from_token(name_tok))
        module, name = m.groups()

        args, opts, seen = [], [], set()
        for item in items:
            if isinstance(item, CommandOpt):
                if item.name in seen:
                    raise StructuralParseError(f'duplicated option "--{item.name}"', item.loc)
                seen.add(item.name)
                opts.append(item)
            else:
                args.append(item)
        return CommandExpression(name, tuple(args), tuple(opts), module, loc=loc)

    def option(self, meta, children):
        name_tok, value = children
        return CommandOpt(str(name_tok)[2:], value, loc=loc_from_meta(meta))

    def helper(self, meta, children):
        name_tok, *args = children
        name = str(name_tok)[1:]
        if name.endswith('('):
            name = name[:-1]
        return HelperFunctionExpression(name, tuple(args), loc=loc_from_meta(meta))

    def array(self, meta, children):
        return ArrayExpression(tuple(children), loc=loc_from_meta(meta))

    def arith(self, meta, children):
        left, op, right = children
        return ArithmeticExpression(str(op), left, right, loc=loc_from_meta(meta))

    # Terminal-backed rules

    def string(self, meta, children):
        tok = children[0]
        return StringLiteral(decode_string(str(tok)), loc=loc_from_token(tok))

    def number(self, meta, children):
        # A leading minus arrives as its own token.
        first, last = children[0], children[-1]
        value, unit = FixedPoint.parse("".join(str(t) for t in children))
        if unit:
            value = value.scale(TIME_UNITS[unit])
        return NumberLiteral(value, unit, loc=loc_between(first, last))

    def hex(self, meta, children):
        tok = children[0]
        text = str(tok)
        if not HEX_RE.match(text):
            raise StructuralParseError(f'invalid hex literal "{text}"', loc_from_token(tok))
        if len(text) == 42:
            return AddressLiteral(text, loc=loc_from_token(tok))
        return BytesLiteral(text, loc=loc_from_token(tok))

    def variable(self, meta, children):
        tok = children[0]
        return VariableIdentifier(str(tok), loc=loc_from_token(tok))

    def identifier(self, meta, children):
        tok = children[0]
        text = str(tok)
        if text in ('true', 'false'):
            return BoolLiteral(text == 'true', loc=loc_from_token(tok))
        return ProbableIdentifier(text, loc=loc_from_token(tok))


def transform(tree) -> Program:
    """Runs the transformer, surfacing structural errors unwrapped."""
    try:
        return CrispTransformer().transform(tree)
    except VisitError as e:
        if isinstance(e.orig_exc, StructuralParseError):
            raise e.orig_exc from None
        raise
