"""
Quote- and parenthesis-aware scanning primitives for Access and PostgreSQL SQL text.

Every pass of the Access->PostgreSQL compiler (function catalog, syntax rewrite,
schema qualification, domain functions, DDL synthesis, query-design parsing and
stub generation) locates parentheses, commas and keywords through this module,
so all of them agree on what "top level" means:

  - depth 0 (not inside any parenthesis), and
  - not inside a '...' or "..." literal (a doubled delimiter is an escape), and
  - not inside an Access [bracketed name].

Scanning state is an explicit Cursor value threaded through the helpers; no
module or object keeps match positions between calls.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

QUOTE_CHARS = "'\""
BRACKET_OPEN = "["
BRACKET_CLOSE = "]"

_IDENT_START_RE = re.compile(r"[A-Za-z_]")


@dataclass(frozen=True)
class Cursor:
    """Position in *text* plus the lexical state *before* the character at *pos*."""
    text: str
    pos: int = 0
    depth: int = 0
    in_string: bool = False
    string_delim: str = ""

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    @property
    def char(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def at_top_level(self) -> bool:
        return self.depth == 0 and not self.in_string


def advance(cur: Cursor) -> Cursor:
    """Consume one lexical unit (a doubled-quote escape counts as one) and return the next cursor."""
    text, i = cur.text, cur.pos
    c = text[i]
    if cur.in_string:
        if c == cur.string_delim:
            if cur.string_delim != BRACKET_CLOSE and i + 1 < len(text) and text[i + 1] == c:
                return Cursor(text, i + 2, cur.depth, True, cur.string_delim)
            return Cursor(text, i + 1, cur.depth, False, "")
        return Cursor(text, i + 1, cur.depth, True, cur.string_delim)
    if c in QUOTE_CHARS:
        return Cursor(text, i + 1, cur.depth, True, c)
    if c == BRACKET_OPEN:
        return Cursor(text, i + 1, cur.depth, True, BRACKET_CLOSE)
    if c == "(":
        return Cursor(text, i + 1, cur.depth + 1)
    if c == ")":
        return Cursor(text, i + 1, cur.depth - 1)
    return Cursor(text, i + 1, cur.depth)


def scan(text: str, start: int = 0) -> Iterator[Cursor]:
    """Yield a cursor for each lexical unit of text[start:] (state is relative to *start*)."""
    cur = Cursor(text, start)
    while not cur.at_end():
        yield cur
        cur = advance(cur)


def find_matching_close(text: str, open_index: int) -> Optional[int]:
    """Return the index of the ')' matching the '(' at *open_index*, or None."""
    if open_index < 0 or open_index >= len(text) or text[open_index] != "(":
        return None
    for cur in scan(text, open_index):
        if not cur.in_string and cur.char == ")" and cur.depth == 1:
            return cur.pos
    return None


def enclosing_open_paren(text: str, pos: int) -> Optional[int]:
    """Index of the innermost '(' still open at *pos* (scanning from the start), or None."""
    stack: list[int] = []
    for cur in scan(text):
        if cur.pos >= pos:
            break
        if cur.in_string:
            continue
        if cur.char == "(":
            stack.append(cur.pos)
        elif cur.char == ")" and stack:
            stack.pop()
    return stack[-1] if stack else None


def enclosing_call_name(text: str, pos: int) -> Optional[str]:
    """Lower-cased name of the function whose argument list contains *pos* (e.g. 'extract'), or None."""
    open_idx = enclosing_open_paren(text, pos)
    if open_idx is None:
        return None
    m = re.search(r"([A-Za-z_][\w$]*)\s*$", text[:open_idx])
    return m.group(1).lower() if m else None


def is_inside_quotes(text: str, pos: int) -> bool:
    """True if *pos* falls inside a quoted literal, quoted identifier or [bracketed name]."""
    for cur in scan(text):
        if cur.pos >= pos:
            return cur.in_string
    return False


def is_top_level(text: str, pos: int) -> bool:
    """True if *pos* is at parenthesis depth 0 and outside any quoted span."""
    for cur in scan(text):
        if cur.pos >= pos:
            return cur.at_top_level()
    return False


Separator = Union[str, Callable[[str, int], int]]


def _separator_length(separator: Separator, text: str, pos: int) -> int:
    if callable(separator):
        return separator(text, pos)
    return len(separator) if text.startswith(separator, pos) else 0


def split_top_level(text: str, separator: Separator = ",") -> list[str]:
    """
    Split *text* wherever *separator* occurs at top level.

    *separator* is either a literal string or a predicate ``(text, index) -> length``
    returning the separator length matched at *index* (0 for no match).
    Parts are returned untrimmed; the result always has at least one element.
    """
    parts: list[str] = []
    start = 0
    skip_until = -1
    for cur in scan(text):
        if cur.pos < skip_until or not cur.at_top_level():
            continue
        n = _separator_length(separator, text, cur.pos)
        if n > 0:
            parts.append(text[start:cur.pos])
            start = cur.pos + n
            skip_until = start
    parts.append(text[start:])
    return parts


def parse_argument_list(text: str) -> list[str]:
    """Split a function argument list on top-level commas; parts are trimmed, a trailing empty part dropped."""
    args = [a.strip() for a in split_top_level(text, ",")]
    if args and not args[-1]:
        args.pop()
    return args


def _keyword_pattern(keyword: str) -> re.Pattern:
    words = [re.escape(w) for w in keyword.split()]
    return re.compile(r"(?<![\w$.\"])" + r"\s+".join(words) + r"(?![\w$])", re.IGNORECASE)


def iter_top_level_matches(text: str, pattern: re.Pattern, start: int = 0) -> Iterator[re.Match]:
    """Yield non-overlapping matches of *pattern* that begin at a top-level position at or after *start*."""
    resume = start
    for cur in scan(text):
        if cur.pos < resume or not cur.at_top_level():
            continue
        m = pattern.match(text, cur.pos)
        if m and m.end() > m.start():
            yield m
            resume = m.end()


def find_top_level_keyword_span(text: str, keyword: str, start: int = 0) -> Optional[tuple[int, int]]:
    """(start, end) of the first top-level occurrence of *keyword* (words may be separated by any whitespace)."""
    for m in iter_top_level_matches(text, _keyword_pattern(keyword), start):
        return (m.start(), m.end())
    return None


def find_top_level_keyword(text: str, keyword: str, start: int = 0) -> Optional[int]:
    """Index of the first top-level occurrence of *keyword* at or after *start*, or None."""
    span = find_top_level_keyword_span(text, keyword, start)
    return span[0] if span else None


def split_top_level_keyword(text: str, keyword: str) -> list[str]:
    """Split on a top-level keyword (e.g. AND); parts trimmed, empty parts dropped."""
    pattern = _keyword_pattern(keyword)
    pieces: list[str] = []
    last = 0
    for m in iter_top_level_matches(text, pattern):
        pieces.append(text[last:m.start()])
        last = m.end()
    pieces.append(text[last:])
    return [p.strip() for p in pieces if p.strip()]


def quoted_segments(text: str, delimiters: str = QUOTE_CHARS + BRACKET_OPEN) -> list[tuple[bool, str]]:
    """
    Break *text* into (is_quoted, chunk) runs. Only spans opened by one of *delimiters*
    count as quoted; others are scanned through but reported as plain text.
    """
    segments: list[tuple[bool, str]] = []
    plain_start = 0
    cur = Cursor(text)
    while not cur.at_end():
        if cur.in_string or cur.char not in QUOTE_CHARS + BRACKET_OPEN:
            cur = advance(cur)
            continue
        opener, span_start = cur.char, cur.pos
        cur = advance(cur)
        while not cur.at_end() and cur.in_string:
            cur = advance(cur)
        if opener in delimiters:
            if span_start > plain_start:
                segments.append((False, text[plain_start:span_start]))
            segments.append((True, text[span_start:cur.pos]))
            plain_start = cur.pos
    if plain_start < len(text):
        segments.append((False, text[plain_start:]))
    return segments


def sub_outside_quotes(
    pattern: str,
    repl,
    text: str,
    flags: int = 0,
    delimiters: str = QUOTE_CHARS + BRACKET_OPEN,
) -> str:
    """re.sub applied only to the parts of *text* outside quoted spans opened by *delimiters*."""
    compiled = re.compile(pattern, flags)
    return "".join(chunk if quoted else compiled.sub(repl, chunk)
                   for quoted, chunk in quoted_segments(text, delimiters))


def is_balanced(text: str) -> bool:
    """True if parentheses in *text* balance (ignoring quoted spans) and never go negative."""
    depth = 0
    for cur in scan(text):
        if cur.in_string:
            continue
        if cur.char == "(":
            depth += 1
        elif cur.char == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


@dataclass(frozen=True)
class CallSite:
    """A function call found in SQL text: name(args) spanning text[start:end]."""
    name: str
    start: int
    open_index: int
    close_index: int
    args: tuple[str, ...]

    @property
    def end(self) -> int:
        return self.close_index + 1


def find_call(text: str, name_pattern: re.Pattern, start: int = 0) -> Optional[CallSite]:
    """
    First call ``NAME(...)`` at or after *start* whose head matches *name_pattern*
    (group 1 = the name, the match ending with the opening parenthesis) and that is
    not inside a quoted span. Calls with an unterminated argument list are skipped.
    """
    pos = start
    while True:
        m = name_pattern.search(text, pos)
        if not m:
            return None
        if is_inside_quotes(text, m.start()):
            pos = m.start() + 1
            continue
        open_idx = m.end() - 1
        close_idx = find_matching_close(text, open_idx)
        if close_idx is None:
            pos = m.start() + 1
            continue
        return CallSite(
            name=m.group(1) if m.groups() else m.group(0),
            start=m.start(),
            open_index=open_idx,
            close_index=close_idx,
            args=tuple(parse_argument_list(text[open_idx + 1:close_idx])),
        )


# ---------------------------------------------------------------------------
# Identifier canonicalization (shared by every module that crosses a name boundary)
# ---------------------------------------------------------------------------

PARAM_PREFIX = "p_"


def sanitize_name(name: str) -> str:
    """Canonical PostgreSQL identifier: lowercase, whitespace runs -> '_', anything but [a-z0-9_] dropped."""
    return re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", (name or "").strip().lower()))


def param_name(name: str) -> str:
    """Canonical parameter identifier for a legacy parameter/field name."""
    return PARAM_PREFIX + sanitize_name(name)


def is_param_name(token: str) -> bool:
    return token.startswith(PARAM_PREFIX)


def quote_ident(name: str) -> str:
    """Double-quote an identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def strip_quotes(name: Optional[str]) -> Optional[str]:
    """Remove one layer of surrounding double quotes or brackets."""
    if not name:
        return name
    if len(name) >= 2 and ((name[0] == '"' and name[-1] == '"') or (name[0] == "[" and name[-1] == "]")):
        return name[1:-1]
    return name


def unquote_literal(token: str) -> Optional[str]:
    """Inner text of a '...' or "..." literal with doubled delimiters unescaped; None if not a literal."""
    t = token.strip()
    if len(t) >= 2 and t[0] in QUOTE_CHARS and t[-1] == t[0]:
        inner = t[1:-1]
        doubled = t[0] * 2
        # the literal must be one span, not "a" & "b"
        if inner.replace(doubled, "").find(t[0]) >= 0:
            return None
        return inner.replace(doubled, t[0])
    return None


def render_schema(schema: str) -> str:
    """Schema name as it appears before ."table": bare when already canonical, quoted otherwise."""
    if re.fullmatch(r"[a-z_][a-z0-9_]*", schema or ""):
        return schema
    return quote_ident(schema)


def is_identifier_start(ch: str) -> bool:
    return bool(_IDENT_START_RE.match(ch or ""))
