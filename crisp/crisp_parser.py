"""
Parses CRISP source text into a Program.

The grammar lives in ``grammar/crisp.lark`` and is compiled once per process.
A clean script goes through a single Lark pass. When that pass fails the
source is split into top-level statements and each one is parsed on its own,
so a single run reports every malformed statement.
"""
from typing import List, Optional, Tuple

from lark import Lark
from lark.exceptions import UnexpectedInput, UnexpectedToken, UnexpectedCharacters

from crisp.crisp_datatypes import Location, Position, Program
from crisp.crisp_errors import ParseError, StructuralParseError
from crisp.crisp_transformer import transform

_parser: Optional[Lark] = None


def get_parser() -> Lark:
    global _parser
    if _parser is None:
        _parser = Lark.open(
            'grammar/crisp.lark',
            rel_to=__file__,
            parser='lalr',
            propagate_positions=True,
        )
    return _parser


# =================================================================
# Source scanning
# =================================================================

def _position_at(text: str, offset: int) -> Position:
    offset = max(0, min(offset, len(text)))
    line = text.count('\n', 0, offset) + 1
    line_start = text.rfind('\n', 0, offset) + 1
    return Position(line, offset - line_start + 1)


def _span(text: str, start: int, end: int) -> Location:
    return Location(_position_at(text, start), _position_at(text, end), start, end)


def _scan(text: str) -> Tuple[List[Tuple[int, int]], int]:
    """Splits ``text`` into top-level statement spans.

    Returns the ``(start, end)`` offsets of every statement that holds code
    and the parenthesis depth left open at the end of the text.
    """
    chunks = []
    depth = 0
    start = 0
    has_code = False
    quote = None
    in_comment = False
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '\n':
            quote = None
            in_comment = False
            if depth == 0:
                if has_code:
                    chunks.append((start, i))
                start, has_code = i + 1, False
        elif in_comment:
            pass
        elif quote:
            if ch == '\\':
                i += 1
            elif ch == quote:
                quote = None
        elif ch in '"\'':
            quote = ch
            has_code = True
        elif ch == '#':
            in_comment = True
        elif ch in '([':
            depth += 1
            has_code = True
        elif ch in ')]':
            depth = max(0, depth - 1)
            has_code = True
        elif not ch.isspace():
            has_code = True
        i += 1
    if has_code:
        chunks.append((start, len(text)))
    return chunks, depth


def open_depth(text: str) -> int:
    """Number of brackets still open at the end of ``text``."""
    return _scan(text)[1]


def _mask(text: str, start: int, end: int) -> str:
    """Blanks everything outside ``[start, end)`` while keeping line breaks."""
    def blank(s):
        return ''.join(c if c == '\n' else ' ' for c in s)
    return blank(text[:start]) + text[start:end]


def _blank_line(text: str, line: int) -> str:
    lines = text.split('\n')
    if 1 <= line <= len(lines):
        lines[line - 1] = ' ' * len(lines[line - 1])
    return '\n'.join(lines)


def _error_offset(text: str, e: UnexpectedInput, fallback: int) -> int:
    pos = getattr(e, 'pos_in_stream', None)
    if isinstance(pos, int) and pos >= 0:
        return pos
    line, col = getattr(e, 'line', -1), getattr(e, 'column', -1)
    if line is None or line < 1:
        return fallback
    lines = text.split('\n')
    return sum(len(s) + 1 for s in lines[:line - 1]) + max(col - 1, 0)


def _describe(e: UnexpectedInput) -> str:
    match e:
        case UnexpectedToken(token=tok) if tok.type == '$END':
            return "unexpected end of input"
        case UnexpectedToken(token=tok):
            return f'unexpected "{tok}"'
        case UnexpectedCharacters(char=ch):
            return f'unexpected character "{ch}"'
        case _:
            return "unexpected end of input"


def _syntax_error(text: str, e: UnexpectedInput, fallback: int) -> StructuralParseError:
    start = _error_offset(text, e, fallback)
    end = start
    while end < len(text) and not text[end].isspace():
        end += 1
    return StructuralParseError(_describe(e), _span(text, start, end))


# =================================================================
# Parsing
# =================================================================

def _parse_text(text: str) -> Program:
    return transform(get_parser().parse(text))


def _parse_statement(text: str, start: int, end: int):
    """Parses one statement, blanking failing lines to salvage the rest of it.

    Returns the statements recovered and the first error met (if any).
    """
    source = _mask(text, start, end)
    first_error = None
    attempts = source.count('\n', start) + 1
    for _ in range(attempts):
        try:
            return list(_parse_text(source).body), first_error
        except UnexpectedInput as e:
            err = _syntax_error(source, e, end)
        except StructuralParseError as e:
            err = e
        if first_error is None:
            first_error = err
        line = err.loc.start.line if err.loc else None
        if line is None:
            break
        source = _blank_line(source, line)
    return [], first_error


def _parse_recovering(text: str) -> Tuple[Program, List[StructuralParseError]]:
    chunks, _ = _scan(text)
    body, errors = [], []
    for start, end in chunks:
        statements, err = _parse_statement(text, start, end)
        body.extend(statements)
        if err is not None:
            errors.append(err)
    loc = _span(text, 0, len(text))
    return Program(tuple(body), loc=loc), errors


def parse(text: str) -> Program:
    """Parses a complete script, raising ``ParseError`` on any malformed statement."""
    try:
        return _parse_text(text)
    except (UnexpectedInput, StructuralParseError):
        pass
    program, errors = _parse_recovering(text)
    if errors:
        raise ParseError(errors)
    return program


def parse_partial(text: str) -> Tuple[Program, List[StructuralParseError]]:
    """Parses a script that may still be being edited.

    Dangling blocks are closed and malformed statements skipped. Returns the
    salvaged program together with the errors met along the way.
    """
    depth = open_depth(text)
    if depth:
        text = text + '\n)' * depth
    try:
        return _parse_text(text), []
    except (UnexpectedInput, StructuralParseError):
        pass
    return _parse_recovering(text)
