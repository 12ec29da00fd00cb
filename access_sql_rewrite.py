"""
Rewrite engine: Access SQL/expression text -> PostgreSQL text.

Two passes, always in this order:
  apply_catalog(sql)  legacy function calls -> PostgreSQL (access_function_map.FUNCTION_MAP)
  apply_syntax(sql)   reserved words, TOP -> LIMIT, booleans, Date()/Now(), #date# literals,
                      bang references, & concatenation, "string" literals, LIKE wildcards,
                      [bracket] identifiers

Both passes first decide whether the text is still Access SQL (looks_like_access). Text
that carries no Access markers is treated as already converted and returned unchanged,
which keeps re-running the pipeline on its own output a no-op. Each rule catches its own
failures and degrades to a warning; the text before the failing rule is kept.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

from access_function_map import (
    DOMAIN_FUNCTION_NAMES,
    FUNCTION_MAP,
    PG_NATIVE_NAMES,
    catalog_call_pattern,
    lookup,
)
from access_schema_qualifier import SQL_RESERVED
from access_sql_scanner import (
    QUOTE_CHARS,
    enclosing_open_paren,
    find_call,
    find_matching_close,
    is_inside_quotes,
    quoted_segments,
    sanitize_name,
    sub_outside_quotes,
)

log = logging.getLogger("access_to_pg.rewrite")

MAX_CATALOG_PASSES = 20

_CATALOG_CALL_RE = catalog_call_pattern()


def add_warning(warnings: Optional[list], message: str) -> None:
    """Append *message* to *warnings* (if given) unless already present; always logs it."""
    log.warning("%s", message)
    if warnings is not None and message not in warnings:
        warnings.append(message)


# ---------------------------------------------------------------------------
# Dialect detection
# ---------------------------------------------------------------------------

_LEGACY_CALL_RE = catalog_call_pattern(
    [k for k in FUNCTION_MAP if k not in PG_NATIVE_NAMES] + [n.lower() for n in DOMAIN_FUNCTION_NAMES]
)

_LEGACY_MARKER_RES = [
    re.compile(r"\[[^\]]*\]"),
    re.compile(r"&"),
    re.compile(r"#\s*\d{1,4}[-/]\d{1,2}[-/]\d{1,4}[^#]*#"),
    re.compile(r"\bDISTINCTROW\b", re.IGNORECASE),
    re.compile(r"\bSELECT\s+(?:DISTINCT\s+)?TOP\s+\d+", re.IGNORECASE),
    re.compile(r"[\w\]]\s*!\s*[\w\[]"),
    re.compile(r"\bLIKE\s+\"", re.IGNORECASE),
    re.compile(r"(?<![\w.\"$])(?:Date|Time)\s*\(\s*\)", re.IGNORECASE),
    re.compile(r"\bTempVars\b", re.IGNORECASE),
]

_DQ_TOKEN_RE = re.compile(r'"((?:[^"]|"")*)"')

# LIKE 'A*' / LIKE 'b?c': Access wildcards in a single-quoted pattern
_LIKE_WILDCARD_RE = re.compile(r"\bLIKE\s+'(?:[^']|'')*?[*?]", re.IGNORECASE)

_MOD_RE = re.compile(r"(?<![\w.\"$])Mod(?![\w$])", re.IGNORECASE)
_OPERAND_TAIL_RE = re.compile(r"(?:[\])\"'\d]|\b([A-Za-z_][\w$]*))\s*$")


def _is_mod_operator(sql: str, start: int, end: int) -> bool:
    """a Mod b is the operator; mod(a, b) with no operand before it is PostgreSQL's function."""
    if not re.match(r"\s*\(", sql[end:]):
        return True
    m = _OPERAND_TAIL_RE.search(sql, 0, start)
    return bool(m) and (m.group(1) or "").lower() not in SQL_RESERVED


def looks_like_access(sql: str) -> bool:
    """
    True if *sql* still carries Access-only syntax. Only text outside '...' literals
    is examined, apart from the pattern of a LIKE. A double-quoted token counts as
    Access when its content is not a canonical identifier and it is not part of a
    dotted name.
    """
    for m in _LIKE_WILDCARD_RE.finditer(sql):
        if not is_inside_quotes(sql, m.start()):
            return True
    for m in _MOD_RE.finditer(sql):
        if not is_inside_quotes(sql, m.start()) and _is_mod_operator(sql, m.start(), m.end()):
            return True
    for quoted, chunk in quoted_segments(sql, "'"):
        if quoted:
            continue
        if any(p.search(chunk) for p in _LEGACY_MARKER_RES):
            return True
        if _LEGACY_CALL_RE.search(chunk):
            return True
        for m in _DQ_TOKEN_RE.finditer(chunk):
            inner = m.group(1)
            dotted = chunk[:m.start()].endswith(".") or re.match(r"\s*\.", chunk[m.end():])
            if not dotted and (not inner or inner != sanitize_name(inner)):
                return True
    return False


# ---------------------------------------------------------------------------
# Function catalog pass
# ---------------------------------------------------------------------------

def apply_catalog(sql: str, warnings: Optional[list] = None, legacy: Optional[bool] = None) -> str:
    """
    Replace legacy function calls with their PostgreSQL translations, sweeping the text
    left to right and repeating until nothing changes (at most MAX_CATALOG_PASSES sweeps).
    A call whose arguments do not fit its transform is left in place with a warning.
    """
    if not sql:
        return sql
    if legacy is None:
        legacy = looks_like_access(sql)
    if not legacy:
        return sql
    for _ in range(MAX_CATALOG_PASSES):
        changed = False
        pos = 0
        while True:
            call = find_call(sql, _CATALOG_CALL_RE, pos)
            if call is None:
                break
            transform = lookup(call.name)
            try:
                replacement = transform(list(call.args))
            except ValueError as e:
                add_warning(warnings, f"function {call.name}() left untranslated: {e}")
                pos = call.start + 1
                continue
            if replacement != sql[call.start:call.end]:
                log.debug("[CATALOG] %s -> %s", sql[call.start:call.end][:80], replacement[:80])
                sql = sql[:call.start] + replacement + sql[call.end:]
                changed = True
            pos = call.start + 1
        if not changed:
            break
    return sql


# ---------------------------------------------------------------------------
# Syntax rules (each takes and returns SQL text; rule failures become warnings)
# ---------------------------------------------------------------------------

def _replace_reserved_words(sql: str, warnings: list) -> str:
    sql = sub_outside_quotes(r"\bDISTINCTROW\b", "DISTINCT", sql, re.IGNORECASE)
    return sub_outside_quotes(
        r"\bDELETE\s+(?:(?:\[[^\]]+\]|\"[^\"]+\"|\w+)\s*\.\s*)?\*\s+FROM\b", "DELETE FROM", sql,
        re.IGNORECASE, delimiters=QUOTE_CHARS,
    )


_TOP_RE = re.compile(r"\bSELECT(\s+(?:DISTINCTROW|DISTINCT|ALL)\s+|\s+)TOP\s+(\d+)(\s+PERCENT)?\s+", re.IGNORECASE)


def _convert_top_to_limit(sql: str, warnings: list) -> str:
    """SELECT TOP n ... -> SELECT ... LIMIT n, with LIMIT placed at the end of the enclosing query."""
    pos = 0
    while True:
        m = _TOP_RE.search(sql, pos)
        if not m:
            return sql
        if is_inside_quotes(sql, m.start()):
            pos = m.end()
            continue
        n = m.group(2)
        if m.group(3):
            add_warning(warnings, f"TOP {n} PERCENT has no PostgreSQL equivalent; left unchanged")
            pos = m.end()
            continue
        head = "SELECT" + (m.group(1) if m.group(1).strip() else " ")
        open_idx = enclosing_open_paren(sql, m.start())
        end = find_matching_close(sql, open_idx) if open_idx is not None else None
        if end is None:
            end = len(sql)
        body = sql[m.end():end].rstrip()
        tail = sql[end:]
        if end == len(sql) and body.endswith(";"):
            body, tail = body[:-1].rstrip(), ";"
        sql = sql[:m.start()] + head + body + f" LIMIT {n}" + tail
        pos = m.start() + len(head)


def _convert_booleans(sql: str, warnings: list) -> str:
    return sub_outside_quotes(r"(?<![\w.\"$])(True|False)(?![\w$])",
                              lambda m: m.group(1).lower(), sql, re.IGNORECASE)


def _convert_date_functions(sql: str, warnings: list) -> str:
    sql = sub_outside_quotes(r"(?<![\w.\"$])Date\s*\(\s*\)", "CURRENT_DATE", sql, re.IGNORECASE)
    sql = sub_outside_quotes(r"(?<![\w.\"$])Now\s*\(\s*\)", "CURRENT_TIMESTAMP", sql, re.IGNORECASE)
    return sub_outside_quotes(r"(?<![\w.\"$])Time\s*\(\s*\)", "CURRENT_TIME", sql, re.IGNORECASE)


_DATE_LITERAL_RE = re.compile(
    r"#\s*(?:(\d{1,2})/(\d{1,2})/(\d{4})|(\d{4})-(\d{1,2})-(\d{1,2}))"
    r"(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)?)?\s*#",
    re.IGNORECASE,
)
_TIME_LITERAL_RE = re.compile(r"#\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)?\s*#", re.IGNORECASE)


def _hour24(hour: str, meridiem: Optional[str]) -> int:
    h = int(hour)
    if meridiem:
        if meridiem.upper() == "PM" and h < 12:
            h += 12
        elif meridiem.upper() == "AM" and h == 12:
            h = 0
    return h


def _date_literal(m: re.Match) -> str:
    if m.group(1):
        year, month, day = m.group(3), m.group(1), m.group(2)
    else:
        year, month, day = m.group(4), m.group(5), m.group(6)
    date = f"{int(year):04d}-{int(month):02d}-{int(day):02d}"
    if m.group(7) is None:
        return f"'{date}'::date"
    h = _hour24(m.group(7), m.group(10))
    return f"'{date} {h:02d}:{m.group(8)}:{m.group(9) or '00'}'::timestamp"


def _time_literal(m: re.Match) -> str:
    h = _hour24(m.group(1), m.group(4))
    return f"'{h:02d}:{m.group(2)}:{m.group(3) or '00'}'::time"


def convert_date_literals(sql: str, warnings: Optional[list] = None) -> str:
    """#m/d/yyyy#, #yyyy-mm-dd# (optionally with a time) and #hh:mm# literals -> typed PostgreSQL literals."""
    sql = sub_outside_quotes(_DATE_LITERAL_RE.pattern, _date_literal, sql, re.IGNORECASE)
    return sub_outside_quotes(_TIME_LITERAL_RE.pattern, _time_literal, sql, re.IGNORECASE)


_BANG_SEGMENT = r"(?:\[[^\]]+\]|[A-Za-z_]\w*)"
_BANG_CHAIN_RE = re.compile(
    r"(?<![\w\].\"!])(" + _BANG_SEGMENT + r")((?:\s*!\s*" + _BANG_SEGMENT + r")+)"
)


def _flatten_bang_references(sql: str, warnings: list) -> str:
    """Forms!F!Ctl, [Forms]![F]![Ctl], Table!Field -> [last segment]; TempVars chains are left to the parameter resolver."""
    def repl(m: re.Match) -> str:
        head = m.group(1).strip("[]")
        if head.lower() == "tempvars":
            return m.group(0)
        last = re.split(r"\s*!\s*", m.group(2))[-1].strip("[]")
        if head.lower() in ("forms", "reports", "form", "report", "parent"):
            add_warning(warnings, f"form reference {m.group(0)} flattened to field [{last}]")
        return f"[{last}]"
    return sub_outside_quotes(_BANG_CHAIN_RE.pattern, repl, sql, delimiters=QUOTE_CHARS)


def _convert_concatenation(sql: str, warnings: list) -> str:
    return sub_outside_quotes(r"\s*&\s*", " || ", sql)


def _convert_string_literals(sql: str, warnings: list) -> str:
    """"text" literals -> 'text' (Jet SQL never uses double quotes for identifiers)."""
    out = []
    for quoted, chunk in quoted_segments(sql, '"'):
        if quoted and len(chunk) >= 2 and chunk.endswith('"'):
            inner = chunk[1:-1].replace('""', '"')
            out.append("'" + inner.replace("'", "''") + "'")
        else:
            out.append(chunk)
    return "".join(out)


_LIKE_TAIL_RE = re.compile(r"\bLIKE\s*$", re.IGNORECASE)
_LIKE_CONTINUATION_RE = re.compile(r"^\s*\|\|\s*(?:(?:\[[^\]]*\]|[\w.\"])+\s*\|\|\s*)?$")


def _like_pattern(pattern: str, warnings: Optional[list]) -> str:
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "[" and i + 2 < len(pattern) and pattern[i + 2] == "]" and pattern[i + 1] in "*?#[":
            literal = pattern[i + 1]
            out.append("\\" + literal if literal in "%_" else literal)
            i += 3
            continue
        if c == "*":
            out.append("%")
        elif c == "?":
            out.append("_")
        elif c in "%_":
            out.append("\\" + c)
        else:
            if c == "#":
                add_warning(warnings, "LIKE digit wildcard '#' has no LIKE equivalent; kept as a literal")
            out.append(c)
        i += 1
    return "".join(out)


def convert_like_wildcards(sql: str, warnings: Optional[list] = None) -> str:
    """Translate * ? wildcards in the literal(s) of each LIKE operand (including || chains)."""
    segments = quoted_segments(sql, "'")
    out = []
    in_like = False
    for quoted, chunk in segments:
        if quoted:
            if in_like and chunk.endswith("'") and len(chunk) >= 2:
                inner = chunk[1:-1].replace("''", "'")
                chunk = "'" + _like_pattern(inner, warnings).replace("'", "''") + "'"
            out.append(chunk)
            continue
        out.append(chunk)
        if _LIKE_TAIL_RE.search(chunk):
            in_like = True
        elif not (in_like and _LIKE_CONTINUATION_RE.match(chunk)):
            in_like = False
    return "".join(out)


def _convert_mod_operator(sql: str, warnings: list) -> str:
    out = []
    offset = 0
    for quoted, chunk in quoted_segments(sql):
        base = offset
        offset += len(chunk)
        if quoted:
            out.append(chunk)
            continue
        out.append(_MOD_RE.sub(
            lambda m: "%" if _is_mod_operator(sql, base + m.start(), base + m.end()) else m.group(0),
            chunk,
        ))
    return "".join(out)


def _convert_bracket_identifiers(sql: str, warnings: list) -> str:
    """[Name] -> "name" (canonical); [p_x] parameter tokens are unwrapped, not quoted."""
    out = []
    for quoted, chunk in quoted_segments(sql, "["):
        if quoted and chunk.endswith("]"):
            inner = chunk[1:-1]
            if inner.startswith("p_"):
                out.append(inner)
                continue
            name = sanitize_name(inner)
            if not name:
                add_warning(warnings, f"identifier {chunk} has no usable characters; left unchanged")
                out.append(chunk)
                continue
            out.append(f'"{name}"')
        else:
            out.append(chunk)
    return "".join(out)


SYNTAX_RULES = [
    ("reserved_words", _replace_reserved_words),
    ("top_to_limit", _convert_top_to_limit),
    ("booleans", _convert_booleans),
    ("date_functions", _convert_date_functions),
    ("date_literals", convert_date_literals),
    ("bang_references", _flatten_bang_references),
    ("concatenation", _convert_concatenation),
    ("string_literals", _convert_string_literals),
    ("like_wildcards", convert_like_wildcards),
    ("mod_operator", _convert_mod_operator),
    ("bracket_identifiers", _convert_bracket_identifiers),
]


def _rule_step(name: str, fn, sql: str, warnings: list) -> str:
    log.debug("[SYNTAX] %s starting (len=%d)", name, len(sql))
    t0 = time.perf_counter()
    try:
        out = fn(sql, warnings)
    except Exception as e:
        add_warning(warnings, f"syntax rule {name} failed: {e}")
        return sql
    log.debug("[SYNTAX] %s done in %.3fs", name, time.perf_counter() - t0)
    return out


def apply_syntax(sql: str, warnings: Optional[list] = None, legacy: Optional[bool] = None) -> str:
    """Apply the Access -> PostgreSQL syntax rules in order; no-op on text that is already PostgreSQL."""
    if not sql:
        return sql
    if legacy is None:
        legacy = looks_like_access(sql)
    if not legacy:
        return sql
    collected: list = warnings if warnings is not None else []
    for name, fn in SYNTAX_RULES:
        sql = _rule_step(name, fn, sql, collected)
    return sql


def rewrite(sql: str, warnings: Optional[list] = None, legacy: Optional[bool] = None) -> str:
    """apply_catalog followed by apply_syntax, with the dialect decided once on the input."""
    if legacy is None:
        legacy = looks_like_access(sql or "")
    return apply_syntax(apply_catalog(sql, warnings, legacy), warnings, legacy)
