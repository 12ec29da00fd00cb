"""
Query parameters: declared PARAMETERS, session variables (TempVars) and values referenced
from domain-function criteria, resolved to typed PostgreSQL function parameters.

Every parameter's target name is "p_" + the canonical form of its legacy name, so the
name used in the rewritten SQL and the one in the function signature always agree.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from access_function_map import DEFAULT_PG_TYPE, is_known_legacy_type, map_legacy_type
from access_sql_scanner import (
    param_name,
    parse_argument_list,
    sanitize_name,
    sub_outside_quotes,
)

log = logging.getLogger("access_to_pg.params")


@dataclass
class DeclaredParameter:
    name: str
    legacy_type: Optional[str] = None


@dataclass
class ResolvedParameter:
    source_name: str
    target_name: str
    target_type: str = DEFAULT_PG_TYPE

    def declaration(self) -> str:
        return f"{self.target_name} {self.target_type}"


# ---------------------------------------------------------------------------
# PARAMETERS clause
# ---------------------------------------------------------------------------

_PARAMETERS_RE = re.compile(r"^\s*PARAMETERS\s+", re.IGNORECASE)
_DECLARATION_RE = re.compile(r"^(\[[^\]]+\]|\S+)\s*(.*)$", re.DOTALL)


def strip_parameters_clause(sql: str) -> tuple[str, list[DeclaredParameter]]:
    """
    Remove a leading ``PARAMETERS a Type, [b c] Type;`` clause and the trailing ';'.
    Returns the remaining SQL and the declarations parsed from the clause.
    """
    text = (sql or "").strip()
    declared: list[DeclaredParameter] = []
    m = _PARAMETERS_RE.match(text)
    if m:
        end = _find_clause_end(text, m.end())
        clause = text[m.end():end]
        text = text[end + 1:].strip() if end < len(text) else ""
        for item in parse_argument_list(clause):
            dm = _DECLARATION_RE.match(item.strip())
            if not dm:
                continue
            name = dm.group(1)
            if name.startswith("[") and name.endswith("]"):
                name = name[1:-1]
            declared.append(DeclaredParameter(name, dm.group(2).strip() or None))
    text = text.rstrip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    return text, declared


def _find_clause_end(text: str, start: int) -> int:
    in_bracket = False
    for i in range(start, len(text)):
        c = text[i]
        if c == "[":
            in_bracket = True
        elif c == "]":
            in_bracket = False
        elif c == ";" and not in_bracket:
            return i
    return len(text)


# ---------------------------------------------------------------------------
# Reference classification
# ---------------------------------------------------------------------------

_SESSION_REF_RE = re.compile(r"^\[?TempVars\]?\s*(?:!|\.Item\s*\(|\()\s*[\[\"']?([^\]\"')]+)", re.IGNORECASE)
_FORM_REF_RE = re.compile(r"^\[?(?:Forms|Form|Reports|Report|Parent|Me)\]?\s*[!.]", re.IGNORECASE)
_DOTTED_REF_RE = re.compile(r"^(?:\[[^\]]+\]|[^\s.\[\]!]+)\s*\.\s*(?:\[[^\]]+\]|[^\s.\[\]!]+)$")


def session_variable_name(name: str) -> Optional[str]:
    """'TempVars!x' / '[TempVars]![x]' / 'TempVars("x")' -> 'x'; None for anything else."""
    m = _SESSION_REF_RE.match((name or "").strip())
    return m.group(1).strip() if m else None


def is_session_variable_ref(name: str) -> bool:
    return session_variable_name(name) is not None


def is_form_ref(name: str) -> bool:
    return bool(_FORM_REF_RE.match((name or "").strip()))


def is_dotted_ref(name: str) -> bool:
    return bool(_DOTTED_REF_RE.match((name or "").strip()))


# ---------------------------------------------------------------------------
# Session variables
# ---------------------------------------------------------------------------

_SESSION_PATTERNS = [
    re.compile(r"\[TempVars\]\s*!\s*\[([^\]]+)\]", re.IGNORECASE),
    re.compile(r"(?<![\w.\"$])TempVars\s*!\s*\[([^\]]+)\]", re.IGNORECASE),
    re.compile(r"(?<![\w.\"$])TempVars(?:\s*\.\s*Item)?\s*\(\s*[\"']([^\"']+)[\"']\s*\)", re.IGNORECASE),
    re.compile(r"(?<![\w.\"$])TempVars\s*!\s*([A-Za-z_]\w*)", re.IGNORECASE),
]


def extract_session_variables(sql: str) -> tuple[str, list[ResolvedParameter]]:
    """Replace session-variable references with their p_ names; return the discovered parameters in order."""
    found: dict[str, ResolvedParameter] = {}

    def repl(m: re.Match) -> str:
        source = m.group(1).strip()
        target = param_name(source)
        found.setdefault(target, ResolvedParameter(source, target))
        return target

    for pattern in _SESSION_PATTERNS:
        sql = sub_outside_quotes(pattern.pattern, repl, sql, re.IGNORECASE, delimiters="'")
    if found:
        log.debug("[PARAMS] session variables: %s", ", ".join(found))
    return sql, list(found.values())


# ---------------------------------------------------------------------------
# Declared parameters
# ---------------------------------------------------------------------------

def real_declared_parameters(declared: Iterable[DeclaredParameter]) -> list[DeclaredParameter]:
    """Declared parameters that are genuine caller inputs (not TempVars, form or Table.Column references)."""
    return [d for d in declared
            if d.name and not is_session_variable_ref(d.name)
            and not is_form_ref(d.name) and not is_dotted_ref(d.name)
            and sanitize_name(d.name)]


def _normalize_column_types(column_types: Optional[dict]) -> dict:
    return {k.replace('"', "").replace(" ", "").lower(): v for k, v in (column_types or {}).items()}


def substitute_declared_parameters(sql: str, declared: Iterable[DeclaredParameter],
                                   column_types: Optional[dict] = None) -> str:
    """
    Replace [Name] occurrences of each declared parameter with its p_ name. A name that
    is a known column is left alone (a field of the same name wins over the parameter).
    Bare-word occurrences are replaced only when *column_types* is available to tell
    fields and parameters apart.
    """
    known = _normalize_column_types(column_types)
    known_tails = {k.rsplit(".", 1)[-1] for k in known}
    for d in real_declared_parameters(declared):
        target = param_name(d.name)
        canonical = sanitize_name(d.name)
        if canonical in known_tails:
            continue
        sql = sub_outside_quotes(r"\[" + re.escape(d.name) + r"\]", target, sql, re.IGNORECASE, delimiters="'\"")
        if known and re.fullmatch(r"[A-Za-z_]\w*", d.name):
            sql = sub_outside_quotes(r"(?<![\w.\"$!\]])" + re.escape(d.name) + r"(?![\w$\[(])",
                                     target, sql, re.IGNORECASE)
    return sql


# ---------------------------------------------------------------------------
# Type inference
# ---------------------------------------------------------------------------

_COL = r'((?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)(?:\s*\.\s*(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*))*)'
_OP = r"(?:<>|<=|>=|=|<|>|\bLIKE\b|\bILIKE\b)"


def _column_key_parts(column: str) -> list[str]:
    parts = re.split(r'\s*\.\s*(?=(?:"|[A-Za-z_]))', column)
    return [sanitize_name(p.strip().strip('"')) for p in parts]


def lookup_column_type(column: str, column_types: Optional[dict], table_hint: Optional[str] = None) -> Optional[str]:
    """Type of *column* (bare, quoted or qualified) from *column_types*: qualified key, then tail, then a unique *.tail key."""
    types = _normalize_column_types(column_types)
    if not types:
        return None
    parts = _column_key_parts(column)
    tail = parts[-1]
    if len(parts) >= 2 and f"{parts[-2]}.{tail}" in types:
        return types[f"{parts[-2]}.{tail}"]
    if table_hint and f"{sanitize_name(table_hint)}.{tail}" in types:
        return types[f"{sanitize_name(table_hint)}.{tail}"]
    if tail in types:
        return types[tail]
    matches = [v for k, v in types.items() if k.endswith("." + tail)]
    if len(matches) == 1:
        return matches[0]
    return None


def infer_parameter_type(target: str, sql: str, column_types: Optional[dict],
                         table_hint: Optional[str] = None) -> Optional[str]:
    """Type of the column *target* is compared with in *sql*, or None."""
    if not column_types or not sql:
        return None
    t = re.escape(target)
    patterns = [
        re.compile(_COL + r"\s*\)?\s*" + _OP + r"\s*" + t + r"(?![\w$])", re.IGNORECASE),
        re.compile(r"(?<![\w$])" + t + r"\s*" + _OP + r"\s*\(?\s*" + _COL, re.IGNORECASE),
        re.compile(_COL + r"\s+BETWEEN\s+(?:\S+\s+AND\s+)?" + t + r"(?![\w$])", re.IGNORECASE),
    ]
    for pattern in patterns:
        for m in pattern.finditer(sql):
            column = m.group(1)
            if column.lower() == target.lower() or column.lower().startswith("p_"):
                continue
            found = lookup_column_type(column, column_types, table_hint)
            if found:
                return found
    return None


def resolve_parameters(
    declared: Iterable[DeclaredParameter],
    discovered: Iterable[ResolvedParameter],
    column_types: Optional[dict],
    sql: str,
    table_hints: Optional[dict] = None,
) -> list[ResolvedParameter]:
    """
    Final ordered, de-duplicated parameter list: declared parameters first, then the
    discovered ones (session variables, criteria values). A known declared type wins;
    otherwise the type comes from the column the parameter is compared with, else text.
    """
    declared = list(declared)
    hints = table_hints or {}
    session_types: dict[str, Optional[str]] = {}
    for d in declared:
        inner = session_variable_name(d.name)
        if inner:
            session_types[param_name(inner)] = d.legacy_type

    resolved: list[ResolvedParameter] = []
    seen: set[str] = set()

    def add(source: str, legacy_type: Optional[str]) -> None:
        target = param_name(source)
        if target in seen:
            return
        seen.add(target)
        if is_known_legacy_type(legacy_type):
            pg_type = map_legacy_type(legacy_type)
        else:
            pg_type = infer_parameter_type(target, sql, column_types, hints.get(source)) or DEFAULT_PG_TYPE
        log.debug("[PARAMS] %s -> %s %s", source, target, pg_type)
        resolved.append(ResolvedParameter(source, target, pg_type))

    for d in real_declared_parameters(declared):
        add(d.name, d.legacy_type)
    for p in discovered:
        add(p.source_name, session_types.get(p.target_name))
    return resolved
