"""
CONL - Runtime Loader and Serializer

A strict, data-only, zero-dependency parser for CONL configuration files.
Documents are indentation-structured maps and lists; every leaf is an untyped
string until the consuming application decides what it means.

Usage:
    import conl

    # Load from string
    doc = conl.loads('''
    server
      host = localhost
      port = 8080  ; default port
    ''')
    doc.as_map()['server'].as_map()['port'].as_scalar()  # '8080'

    # Load from a binary file
    with open('config.conl', 'rb') as f:
        doc = conl.load(f)

    # Write it back out
    text = conl.dumps(doc)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import IO, Any, ClassVar, Iterator, Optional, TextIO, Union

__all__ = [
    'parse', 'loads', 'load', 'tokenize',
    'serialize', 'dumps', 'dump',
    'to_data', 'from_data',
    'Value', 'Scalar', 'Map', 'List', 'Absent',
    'Token', 'TokenType', 'Limits',
    'ParseError', 'ErrorKind', 'ValueTypeError',
]

logger = logging.getLogger(__name__)

# ==========================================
# Data Structures
# ==========================================

class TokenType(Enum):
    # Indentation
    INDENT = auto()
    OUTDENT = auto()

    # Entries
    MAP_KEY = auto()
    LIST_ITEM = auto()

    # Values
    SCALAR = auto()
    MULTILINE_SCALAR = auto()

    # Trivia, only produced on request
    COMMENT = auto()

    # End
    END_OF_DOCUMENT = auto()

_TOKEN_NAMES = {
    TokenType.INDENT: 'indent',
    TokenType.OUTDENT: 'outdent',
    TokenType.MAP_KEY: 'map key',
    TokenType.LIST_ITEM: 'list item',
    TokenType.SCALAR: 'value',
    TokenType.MULTILINE_SCALAR: 'multiline value',
    TokenType.COMMENT: 'comment',
    TokenType.END_OF_DOCUMENT: 'end of document',
}

@dataclass
class Token:
    """A single token with the 1-based line it starts on.

    ``value`` is the decoded text of keys and scalars (and the trimmed text of
    comments); ``raw`` is their source spelling. ``hint`` is only set on
    multiline scalars.
    """
    type: TokenType
    value: str
    line: int
    hint: str = ''
    raw: str = ''

    @property
    def name(self) -> str:
        return _TOKEN_NAMES[self.type]

    def line_number(self) -> int:
        return self.line

class ErrorKind(Enum):
    INCONSISTENT_INDENT = auto()
    UNTERMINATED_QUOTE = auto()
    INVALID_ESCAPE = auto()
    INVALID_CODEPOINT = auto()
    MALFORMED_LINE = auto()
    DUPLICATE_KEY = auto()
    MIXED_SECTION_KIND = auto()
    RESOURCE_LIMIT_EXCEEDED = auto()

class ParseError(Exception):
    def __init__(self, kind: ErrorKind, message: str, line: int):
        super().__init__(f"Parse error at line {line}: {message}")
        self.kind = kind
        self.message = message
        self.line = line

class ValueTypeError(TypeError):
    """A value was used as a shape it does not have."""

@dataclass(frozen=True)
class Limits:
    """Resource guards applied to a single parse.

    ``max_depth`` is the deepest indentation level accepted. ``max_size`` is
    the largest accepted document, in bytes for byte input and in characters
    for text input; ``None`` disables the check.
    """
    max_depth: int = 512
    max_size: Optional[int] = 64 * 1024 * 1024

# ==========================================
# Values
# ==========================================

class _Value:
    __slots__ = ()
    kind: ClassVar[str] = 'value'

    def as_map(self) -> dict[str, Value]:
        raise ValueTypeError(f"Expected a map, got {self.kind}")

    def as_list(self) -> list[Value]:
        raise ValueTypeError(f"Expected a list, got {self.kind}")

    def as_scalar(self) -> str:
        raise ValueTypeError(f"Expected a scalar, got {self.kind}")

@dataclass(slots=True)
class Scalar(_Value):
    text: str
    kind: ClassVar[str] = 'scalar'

    def as_scalar(self) -> str:
        return self.text

@dataclass(slots=True, eq=False)
class Map(_Value):
    entries: dict[str, Value] = field(default_factory=dict)
    kind: ClassVar[str] = 'map'

    def __eq__(self, other):
        if not isinstance(other, Map):
            return NotImplemented
        # entry order is part of the document
        return list(self.entries.items()) == list(other.entries.items())

    def as_map(self) -> dict[str, Value]:
        return self.entries

@dataclass(slots=True)
class List(_Value):
    items: list[Value] = field(default_factory=list)
    kind: ClassVar[str] = 'list'

    def as_list(self) -> list[Value]:
        return self.items

class _AbsentType(_Value):
    """A key or list item written without a value or a nested section."""

    __slots__ = ()
    kind = 'absent'
    _instance: Optional[_AbsentType] = None

    def __new__(cls) -> _AbsentType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __reduce__(self):
        return (_AbsentType, ())

    def __repr__(self) -> str:
        return 'Absent'

    def __bool__(self) -> bool:
        return False

    def as_map(self) -> dict[str, Value]:
        return {}

    def as_list(self) -> list[Value]:
        return []

    def as_scalar(self) -> str:
        return ''

Absent = _AbsentType()

Value = Union[Scalar, Map, List, _AbsentType]

_RAISE = object()

def to_data(value: Value, absent: Any = _RAISE) -> Any:
    """Convert a value tree into plain dicts, lists and strings.

    ``Absent`` has no plain equivalent; pass ``absent`` to substitute one,
    otherwise ValueTypeError is raised.
    """
    if isinstance(value, Scalar):
        return value.text
    if isinstance(value, Map):
        return {key: to_data(item, absent) for key, item in value.entries.items()}
    if isinstance(value, List):
        return [to_data(item, absent) for item in value.items]
    if value is Absent:
        if absent is _RAISE:
            raise ValueTypeError("Absent value has no plain equivalent")
        return absent
    raise ValueTypeError(f"Not a CONL value: {value!r}")

def from_data(obj: Any) -> Value:
    """Build a value tree from plain dicts, lists, strings and None."""
    if obj is None:
        return Absent
    if isinstance(obj, _Value):
        return obj
    if isinstance(obj, str):
        return Scalar(obj)
    if isinstance(obj, dict):
        entries = {}
        for key, item in obj.items():
            if not isinstance(key, str):
                raise ValueTypeError(f"Map keys must be strings, got {type(key).__name__}")
            entries[key] = from_data(item)
        return Map(entries)
    if isinstance(obj, (list, tuple)):
        return List([from_data(item) for item in obj])
    raise ValueTypeError(f"Cannot represent {type(obj).__name__} in CONL, convert it to a string first")

# ==========================================
# Scalar Decoding
# ==========================================

_ESCAPES = {'\\': '\\', '"': '"', 't': '\t', 'r': '\r', 'n': '\n'}
_HEX_RE = re.compile(r'[0-9A-Fa-f]{1,8}')

def decode_quoted(text: str, start: int, line: int) -> tuple[str, int]:
    """Decode the quoted scalar whose opening quote is at ``text[start]``.

    ``text`` is a single physical line. Returns the decoded string and the
    index just past the closing quote.
    """
    content = []
    pos = start + 1
    length = len(text)
    while pos < length:
        ch = text[pos]
        if ch == '"':
            return ''.join(content), pos + 1
        if ch != '\\':
            content.append(ch)
            pos += 1
            continue
        if pos + 1 >= length:
            break
        esc = text[pos + 1]
        if esc in _ESCAPES:
            content.append(_ESCAPES[esc])
            pos += 2
        elif esc == '{':
            end = text.find('}', pos + 2)
            if end < 0:
                raise ParseError(ErrorKind.INVALID_ESCAPE, "Unterminated escape sequence: \\{", line)
            digits = text[pos + 2:end]
            if not _HEX_RE.fullmatch(digits):
                raise ParseError(ErrorKind.INVALID_ESCAPE, f"Invalid escape sequence: \\{{{digits}}}", line)
            codepoint = int(digits, 16)
            if codepoint > 0x10FFFF or 0xD800 <= codepoint <= 0xDFFF:
                raise ParseError(ErrorKind.INVALID_CODEPOINT, f"Invalid codepoint: \\{{{digits}}}", line)
            content.append(chr(codepoint))
            pos = end + 1
        else:
            raise ParseError(ErrorKind.INVALID_ESCAPE, f"Invalid escape sequence: \\{esc}", line)
    raise ParseError(ErrorKind.UNTERMINATED_QUOTE, "Unterminated quoted string", line)

def dedent_multiline(lines: list[str], baseline: str) -> str:
    """Join the body lines of a multiline scalar, removing ``baseline``.

    Lines that do not start with the baseline are blank-only and become empty
    lines. Leading and trailing blanks and newlines are trimmed.
    """
    body = []
    for line in lines:
        if line.startswith(baseline):
            body.append(line[len(baseline):])
        else:
            body.append('')
    return '\n'.join(body).strip(' \t\n')

# ==========================================
# Scanner
# ==========================================

_NEWLINE_RE = re.compile(r'\r\n|\r|\n')
_BLANKS_RE = re.compile(r'[ \t]*')
_BARE_KEY_RE = re.compile(r'[^=;]*')

def _split_lines(text: str) -> list[str]:
    return _NEWLINE_RE.split(text)

class _IndentTracker:
    def __init__(self):
        self.stack = ['']

    def update(self, level: str, line: int) -> list[Token]:
        current = self.stack[-1]
        if level == current:
            return []
        if len(level) > len(current) and level.startswith(current):
            self.stack.append(level)
            return [Token(TokenType.INDENT, '', line)]
        if level not in self.stack:
            raise ParseError(ErrorKind.INCONSISTENT_INDENT,
                             f"Indentation {level!r} does not match any enclosing level", line)
        tokens = []
        while self.stack[-1] != level:
            self.stack.pop()
            tokens.append(Token(TokenType.OUTDENT, '', line))
        return tokens

    def close(self, line: int) -> list[Token]:
        tokens = [Token(TokenType.OUTDENT, '', line) for _ in self.stack[1:]]
        del self.stack[1:]
        return tokens

class _Scanner:
    def __init__(self, text: str, comments: bool = False):
        self.lines = _split_lines(text)
        self.comments = comments
        self.indents = _IndentTracker()
        self.index = 0
        self.line = 0

    def error(self, kind: ErrorKind, message: str):
        raise ParseError(kind, message, self.line)

    def tokens(self) -> Iterator[Token]:
        while self.index < len(self.lines):
            text = self.lines[self.index]
            self.index += 1
            self.line = self.index

            level = _BLANKS_RE.match(text).group()
            rest = text[len(level):]
            # Blank and comment-only lines keep the current indentation
            if not rest or rest[0] == ';':
                if rest and self.comments:
                    yield self.comment(rest)
                continue

            yield from self.indents.update(level, self.line)
            yield from self.scan_line(rest, level)

        self.line = len(self.lines)
        yield from self.indents.close(self.line)
        yield Token(TokenType.END_OF_DOCUMENT, '', self.line)

    def comment(self, text: str) -> Token:
        return Token(TokenType.COMMENT, text[1:].strip(' \t'), self.line)

    def scan_line(self, rest: str, level: str) -> Iterator[Token]:
        if rest[0] == '=':
            yield Token(TokenType.LIST_ITEM, '', self.line)
            yield from self.scan_value(rest[1:], level)
            return

        if rest[0] == '"':
            key, end = decode_quoted(rest, 0, self.line)
            raw = rest[:end]
            after = rest[end:].lstrip(' \t')
            if after and after[0] not in '=;':
                self.error(ErrorKind.MALFORMED_LINE, "Unexpected characters after quoted key")
        else:
            match = _BARE_KEY_RE.match(rest)
            key = raw = match.group().rstrip(' \t')
            after = rest[match.end():]

        yield Token(TokenType.MAP_KEY, key, self.line, raw=raw)
        if after.startswith('='):
            yield from self.scan_value(after[1:], level)
        elif after and self.comments:
            yield self.comment(after)

    def scan_value(self, part: str, level: str) -> Iterator[Token]:
        value = part.lstrip(' \t')
        if not value or value[0] == ';':
            if value and self.comments:
                yield self.comment(value)
            return

        if value.startswith('"""'):
            hint, sep, comment = value[3:].partition(';')
            opener = self.line
            lines, baseline = self.read_multiline(level)
            yield Token(TokenType.MULTILINE_SCALAR, dedent_multiline(lines, baseline), opener,
                        hint=hint.strip(' \t'), raw='\n'.join(lines))
            if sep and self.comments:
                yield Token(TokenType.COMMENT, comment.strip(' \t'), opener)
            return

        if value[0] == '"':
            text, end = decode_quoted(value, 0, self.line)
            after = value[end:].lstrip(' \t')
            if after and after[0] != ';':
                self.error(ErrorKind.MALFORMED_LINE, "Unexpected characters after quoted value")
            yield Token(TokenType.SCALAR, text, self.line, raw=value[:end])
            if after and self.comments:
                yield self.comment(after)
            return

        text, sep, comment = value.partition(';')
        text = text.rstrip(' \t')
        yield Token(TokenType.SCALAR, text, self.line, raw=text)
        if sep and self.comments:
            yield Token(TokenType.COMMENT, comment.strip(' \t'), self.line)

    def read_multiline(self, level: str) -> tuple[list[str], str]:
        """Consume the body of a multiline scalar opened on the current line.

        The indent tracker is not consulted here; the first line that is
        neither blank nor indented by the body's baseline ends the block and
        is scanned normally.
        """
        start = self.index
        while start < len(self.lines) and not self.lines[start].strip(' \t'):
            start += 1
        if start == len(self.lines):
            self.error(ErrorKind.MALFORMED_LINE, "Missing multiline value")

        baseline = _BLANKS_RE.match(self.lines[start]).group()
        if len(baseline) <= len(level) or not baseline.startswith(level):
            self.error(ErrorKind.MALFORMED_LINE, "Multiline value must be indented below its key")

        end = start
        while end < len(self.lines):
            text = self.lines[end]
            if not text.startswith(baseline) and text.strip(' \t'):
                break
            end += 1
        self.index = end
        return self.lines[start:end], baseline

# ==========================================
# Tree Builder
# ==========================================

@dataclass
class _Frame:
    kind: Optional[TokenType] = None
    entries: dict = field(default_factory=dict)
    items: list = field(default_factory=list)
    key: str = ''
    waiting: bool = False

class _TreeBuilder:
    """Assembles values from the token stream with an explicit section stack.

    With ``collect=False`` only the structure is checked; map keys are kept
    for duplicate detection but values are dropped.
    """

    def __init__(self, limits: Limits, collect: bool = True):
        self.limits = limits
        self.collect = collect
        self.stack = [_Frame()]
        self.result: Value = Absent

    def feed(self, token: Token):
        frame = self.stack[-1]
        kind = token.type

        if kind in (TokenType.MAP_KEY, TokenType.LIST_ITEM):
            self.settle(frame, Absent)
            if frame.kind is None:
                frame.kind = kind
            elif frame.kind is not kind:
                expected = _TOKEN_NAMES[frame.kind]
                raise ParseError(ErrorKind.MIXED_SECTION_KIND,
                                 f"Expected a {expected}, got a {token.name}", token.line)
            if kind is TokenType.MAP_KEY:
                if token.value in frame.entries:
                    raise ParseError(ErrorKind.DUPLICATE_KEY, f"Duplicate key {token.value!r}", token.line)
                frame.key = token.value
            frame.waiting = True

        elif kind in (TokenType.SCALAR, TokenType.MULTILINE_SCALAR):
            self.settle(frame, Scalar(token.value))

        elif kind is TokenType.INDENT:
            if not frame.waiting:
                raise ParseError(ErrorKind.MALFORMED_LINE, "Unexpected indent", token.line)
            if len(self.stack) > self.limits.max_depth:
                raise ParseError(ErrorKind.RESOURCE_LIMIT_EXCEEDED,
                                 f"Nesting deeper than {self.limits.max_depth} levels", token.line)
            self.stack.append(_Frame())

        elif kind is TokenType.OUTDENT:
            self.stack.pop()
            self.settle(self.stack[-1], self.close(frame))

        elif kind is TokenType.END_OF_DOCUMENT:
            self.result = self.close(frame)

    def settle(self, frame: _Frame, value: Value):
        if not frame.waiting:
            return
        frame.waiting = False
        if frame.kind is TokenType.MAP_KEY:
            frame.entries[frame.key] = value if self.collect else Absent
        elif self.collect:
            frame.items.append(value)

    def close(self, frame: _Frame) -> Value:
        self.settle(frame, Absent)
        if frame.kind is TokenType.MAP_KEY:
            return Map(frame.entries)
        if frame.kind is TokenType.LIST_ITEM:
            return List(frame.items)
        return Absent

# ==========================================
# Serializer
# ==========================================

_INDENT = '  '
_CONTROL_RE = re.compile(r'[\x00-\x08\x0a-\x1f]')
_QUOTE_ESCAPES = {'\\': '\\\\', '"': '\\"', '\t': '\\t', '\r': '\\r', '\n': '\\n'}

def _is_bare(text: str, forbidden: str) -> bool:
    # A leading U+FEFF would be read back as a byte order mark.
    return bool(text) and text[0] not in ' \t"\ufeff' and text[-1] not in ' \t' \
        and not any(ch in forbidden for ch in text) and not _CONTROL_RE.search(text)

def _is_multiline(text: str) -> bool:
    return '\n' in text and text == text.strip(' \t\n') \
        and not _CONTROL_RE.search(text.replace('\n', ''))

def _quote_string(text: str) -> str:
    out = ['"']
    for ch in text:
        if ch in _QUOTE_ESCAPES:
            out.append(_QUOTE_ESCAPES[ch])
        elif ch < ' ':
            out.append(f"\\{{{ord(ch):x}}}")
        else:
            out.append(ch)
    out.append('"')
    return ''.join(out)

def _encode_key(key: str) -> str:
    return key if _is_bare(key, '=;') else _quote_string(key)

def _scalar_lines(text: str, indent: str, head: str) -> list[str]:
    if _is_bare(text, ';'):
        return [f"{indent}{head} {text}"]
    if _is_multiline(text):
        body = indent + _INDENT
        return [f'{indent}{head} """'] + [body + line if line else '' for line in text.split('\n')]
    return [f"{indent}{head} {_quote_string(text)}"]

def _children(value: Value) -> Iterator[tuple[Optional[str], Value]]:
    if isinstance(value, Map):
        return iter(value.entries.items())
    if isinstance(value, List):
        return ((None, item) for item in value.items)
    if value is Absent:
        return iter(())
    raise ValueTypeError(f"Not a CONL value: {value!r}")

def dumps(value: Value) -> str:
    """Serialize a value tree to canonical CONL text."""
    if isinstance(value, Scalar):
        raise ValueTypeError("A document must be a map or a list, not a scalar")

    lines: list[str] = []
    stack = [('', _children(value))]
    while stack:
        indent, children = stack[-1]
        for key, child in children:
            head = '=' if key is None else _encode_key(key)
            if isinstance(child, Scalar):
                lines.extend(_scalar_lines(child.text, indent, head if key is None else head + ' ='))
                continue
            lines.append(indent + head)
            stack.append((indent + _INDENT, _children(child)))
            break
        else:
            stack.pop()

    logger.debug("Serialized CONL document (%d lines)", len(lines))
    return ''.join(line + '\n' for line in lines)

def serialize(value: Value) -> bytes:
    """Serialize a value tree to UTF-8 encoded CONL."""
    return dumps(value).encode('utf-8')

def dump(value: Value, fp: TextIO):
    """Serialize a value tree to a text file-like object."""
    fp.write(dumps(value))

# ==========================================
# Public API
# ==========================================

def _check_size(size: int, limits: Limits):
    if limits.max_size is not None and size > limits.max_size:
        raise ParseError(ErrorKind.RESOURCE_LIMIT_EXCEEDED,
                         f"Document exceeds the size limit of {limits.max_size}", 1)

def _decode(source: Union[bytes, bytearray, memoryview, str], limits: Limits) -> str:
    if isinstance(source, str):
        _check_size(len(source), limits)
        text = source
    else:
        source = bytes(source)
        _check_size(len(source), limits)
        try:
            text = source.decode('utf-8')
        except UnicodeDecodeError as exc:
            line = len(_split_lines(source[:exc.start].decode('utf-8')))
            raise ParseError(ErrorKind.MALFORMED_LINE, "Invalid UTF-8", line) from exc
    if text.startswith('\ufeff'):
        text = text[1:]
    return text

def tokenize(source: Union[bytes, str], *, limits: Optional[Limits] = None,
             comments: bool = False, validate: bool = True) -> Iterator[Token]:
    """Iterate over the tokens of a CONL document.

    The structure is checked as tokens are produced, so the iterator raises
    the same errors as parse(). Stop iterating at any point to skip the rest.
    Pass ``comments=True`` to also receive COMMENT tokens.

    With ``validate=False`` duplicate keys, mixed sections, unexpected
    indents and the depth limit are not checked, which suits highlighters
    and linters working on broken files. Lexical errors still raise.
    """
    limits = limits or Limits()
    text = _decode(source, limits)
    builder = _TreeBuilder(limits, collect=False) if validate else None
    for token in _Scanner(text, comments=comments).tokens():
        if builder is not None and token.type is not TokenType.COMMENT:
            builder.feed(token)
        yield token

def parse(source: Union[bytes, str], limits: Optional[Limits] = None) -> Value:
    """Parse a CONL document into a value tree."""
    limits = limits or Limits()
    try:
        text = _decode(source, limits)
        scanner = _Scanner(text)
        builder = _TreeBuilder(limits)
        for token in scanner.tokens():
            builder.feed(token)
    except ParseError as exc:
        logger.debug("Rejected CONL document: %s", exc)
        raise
    logger.debug("Parsed CONL document (%d lines)", scanner.line)
    return builder.result

def loads(source: str, limits: Optional[Limits] = None) -> Value:
    """Parse CONL source string."""
    return parse(source, limits)

def load(fp: IO, limits: Optional[Limits] = None) -> Value:
    """Parse CONL from a text or binary file-like object."""
    return parse(fp.read(), limits)
