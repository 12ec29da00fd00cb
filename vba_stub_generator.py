"""
VBA stub functions: placeholder PostgreSQL functions for VBA procedures, so that views
and functions calling user-defined code can be created before that code is translated.

  - create_stub_functions: one stub per Function/Sub declared in the VBA modules
    (Subs become void functions, Functions RETURN NULL of the mapped type).
  - ensure_stubs_for_sql: text stubs for "schema"."name"(...) calls found in generated
    DDL, sized to the largest argument count seen for each name.

Names that already exist in the schema are skipped, never overwritten. Each batch runs
in one transaction with a SAVEPOINT around every CREATE: a failing CREATE is rolled back
to its savepoint and reported as a warning; a failure outside the per-stub block rolls
back the whole batch and is re-raised.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterable, Optional

from access_function_map import map_legacy_type
from access_sql_rewrite import add_warning
from access_sql_scanner import find_matching_close, parse_argument_list, quote_ident, sanitize_name

log = logging.getLogger("access_to_pg.stubs")

STUB_SAVEPOINT = "vba_stub"

# VBA type-declaration suffix characters (x$, n%, ...)
VBA_TYPE_SUFFIXES = {
    "$": "String",
    "%": "Integer",
    "&": "Long",
    "!": "Single",
    "#": "Double",
    "@": "Currency",
}

_DECLARATION_RE = re.compile(
    r"^[ \t]*(?:(?:Public|Private|Friend)[ \t]+)?(?:Static[ \t]+)?(Function|Sub)[ \t]+([A-Za-z_]\w*)([$%&!#@]?)[ \t]*\(",
    re.IGNORECASE | re.MULTILINE,
)
_RETURN_TYPE_RE = re.compile(r"[ \t]*(\(\s*\))?[ \t]*As[ \t]+([A-Za-z_][\w.]*)", re.IGNORECASE)
_PARAM_PREFIX_RE = re.compile(r"^(?:(?:Optional|ByVal|ByRef|ParamArray)\s+)+", re.IGNORECASE)
_PARAM_RE = re.compile(r"^([A-Za-z_]\w*)([$%&!#@]?)\s*(?:\(\s*\))?(?:\s+As\s+(?:New\s+)?([A-Za-z_][\w.]*))?", re.IGNORECASE)
_LINE_CONTINUATION_RE = re.compile(r"[ \t]+_[ \t]*\r?\n")

_EXISTING_ROUTINES_SQL = """
    SELECT p.proname
      FROM pg_catalog.pg_proc p
      JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
     WHERE n.nspname = %s
"""


@dataclass
class VbaParameter:
    name: str
    vba_type: Optional[str] = None


@dataclass
class VbaDeclaration:
    name: str
    params: list[VbaParameter] = field(default_factory=list)
    return_type: Optional[str] = None
    is_sub: bool = False
    module_name: Optional[str] = None


@dataclass
class StubSynthesisReport:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def map_vba_type_to_pg(vba_type: Optional[str]) -> str:
    return map_legacy_type(vba_type)


def _parse_parameter(text: str) -> Optional[VbaParameter]:
    cleaned = _PARAM_PREFIX_RE.sub("", text.strip())
    m = _PARAM_RE.match(cleaned)
    if not m:
        return None
    vba_type = m.group(3) or VBA_TYPE_SUFFIXES.get(m.group(2))
    return VbaParameter(m.group(1), vba_type)


def parse_vba_declarations(source: Optional[str], module_name: Optional[str] = None) -> list[VbaDeclaration]:
    """Function and Sub declarations in a VBA module (Declare statements are not procedures and are ignored)."""
    if not source:
        return []
    text = _LINE_CONTINUATION_RE.sub(" ", source)
    declarations: list[VbaDeclaration] = []
    for m in _DECLARATION_RE.finditer(text):
        open_idx = m.end() - 1
        close_idx = find_matching_close(text, open_idx)
        if close_idx is None:
            log.debug("[STUBS] unterminated parameter list for %s", m.group(2))
            continue
        params = []
        for part in parse_argument_list(text[open_idx + 1:close_idx]):
            p = _parse_parameter(part)
            if p is not None:
                params.append(p)
        is_sub = m.group(1).lower() == "sub"
        return_type = None
        if not is_sub:
            rm = _RETURN_TYPE_RE.match(text, close_idx + 1)
            if rm:
                return_type = rm.group(2)
            elif m.group(3):
                return_type = VBA_TYPE_SUFFIXES[m.group(3)]
        declarations.append(VbaDeclaration(m.group(2), params, return_type, is_sub, module_name))
    return declarations


def _stub_parameters(params: Iterable[VbaParameter]) -> str:
    out = []
    used: set[str] = set()
    for i, p in enumerate(params, 1):
        name = sanitize_name(p.name) or f"p{i}"
        if name in used:
            name = f"{name}_{i}"
        used.add(name)
        out.append(f"{quote_ident(name)} {map_vba_type_to_pg(p.vba_type)}")
    return ", ".join(out)


def build_stub_ddl(schema: str, decl: VbaDeclaration) -> str:
    """CREATE OR REPLACE FUNCTION for a no-op stub of one declaration."""
    name = sanitize_name(decl.name)
    returns = "void" if decl.is_sub else map_vba_type_to_pg(decl.return_type)
    body = "  NULL;" if decl.is_sub else "  RETURN NULL;"
    return (f"CREATE OR REPLACE FUNCTION {quote_ident(schema)}.{quote_ident(name)}({_stub_parameters(decl.params)})\n"
            f"RETURNS {returns} AS $$\n"
            "BEGIN\n"
            f"{body}\n"
            "END;\n"
            "$$ LANGUAGE plpgsql")


def build_text_stub_ddl(schema: str, name: str, arg_count: int) -> str:
    params = ", ".join(f"p{i} text" for i in range(1, arg_count + 1))
    return (f"CREATE OR REPLACE FUNCTION {quote_ident(schema)}.{quote_ident(name)}({params})\n"
            "RETURNS text AS $$\n"
            "BEGIN\n"
            "  RETURN NULL;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql")


def collect_stub_calls(schema: str, statements: Iterable[str]) -> dict[str, int]:
    """{function name: largest argument count} for every "schema"."name"(...) call in *statements*."""
    pattern = re.compile(re.escape(quote_ident(schema)) + r'\s*\.\s*"((?:[^"]|"")+)"\s*\(')
    calls: dict[str, int] = {}
    for stmt in statements:
        for m in pattern.finditer(stmt or ""):
            if re.search(r"\b(?:FUNCTION|AGGREGATE|PROCEDURE)\s+$", stmt[:m.start()], re.IGNORECASE):
                continue
            close_idx = find_matching_close(stmt, m.end() - 1)
            if close_idx is None:
                continue
            count = len(parse_argument_list(stmt[m.end():close_idx]))
            name = m.group(1).replace('""', '"')
            if count > calls.get(name, -1):
                calls[name] = count
    return calls


def existing_routines(cur, schema: str) -> set[str]:
    cur.execute(_EXISTING_ROUTINES_SQL, (schema,))
    return {row[0] for row in cur.fetchall()}


@contextmanager
def _borrow_connection(conn_or_pool):
    """Yield a connection from a psycopg2 pool (getconn/putconn) or a plain connection."""
    if conn_or_pool is None:
        raise ValueError("a database connection or pool is required")
    if hasattr(conn_or_pool, "getconn"):
        conn = conn_or_pool.getconn()
        try:
            yield conn
        finally:
            conn_or_pool.putconn(conn)
    else:
        yield conn_or_pool


def _create_batch(conn_or_pool, schema: str, items: list[tuple[str, str, str]],
                  report: StubSynthesisReport) -> StubSynthesisReport:
    """Run (name, ddl, label) creations in one transaction; names already in the schema are skipped."""
    import psycopg2

    with _borrow_connection(conn_or_pool) as conn:
        autocommit = getattr(conn, "autocommit", False)
        if autocommit:
            conn.autocommit = False
        try:
            with conn.cursor() as cur:
                existing = existing_routines(cur, schema)
                for name, ddl, label in items:
                    if name in existing:
                        report.skipped.append(name)
                        continue
                    cur.execute(f"SAVEPOINT {STUB_SAVEPOINT}")
                    try:
                        cur.execute(ddl)
                    except psycopg2.Error as e:
                        cur.execute(f"ROLLBACK TO SAVEPOINT {STUB_SAVEPOINT}")
                        add_warning(report.warnings, f"Failed to create stub for {name}{label}: {str(e).strip()}")
                        continue
                    cur.execute(f"RELEASE SAVEPOINT {STUB_SAVEPOINT}")
                    report.created.append(name)
                    existing.add(name)
                    log.debug("[STUBS] created %s.%s", schema, name)
            conn.commit()
        except Exception:
            log.error("[STUBS] stub batch for schema %s failed; rolling back", schema)
            conn.rollback()
            raise
        finally:
            if autocommit:
                conn.autocommit = True
    log.info("[STUBS] %s: %d created, %d skipped, %d warnings",
             schema, len(report.created), len(report.skipped), len(report.warnings))
    return report


def create_stub_functions(conn_or_pool, schema: str, declarations: Iterable[VbaDeclaration]) -> StubSynthesisReport:
    """Stub every declared VBA procedure that does not exist yet in *schema*."""
    if conn_or_pool is None:
        raise ValueError("a database connection or pool is required")
    report = StubSynthesisReport()
    items = []
    seen: set[str] = set()
    for decl in declarations:
        name = sanitize_name(decl.name)
        if not name:
            add_warning(report.warnings, f"VBA procedure {decl.name!r} has no usable PostgreSQL name")
            continue
        if name in seen:
            continue
        seen.add(name)
        label = f" (module: {decl.module_name})" if decl.module_name else ""
        items.append((name, build_stub_ddl(schema, decl), label))
    if not items:
        return report
    return _create_batch(conn_or_pool, schema, items, report)


def ensure_stubs_for_sql(conn_or_pool, schema: str, statements: Iterable[str]) -> StubSynthesisReport:
    """Text stubs for schema-qualified calls in *statements* to functions missing from *schema*."""
    if conn_or_pool is None:
        raise ValueError("a database connection or pool is required")
    report = StubSynthesisReport()
    calls = collect_stub_calls(schema, statements)
    if not calls:
        return report
    items = [(name, build_text_stub_ddl(schema, name, count), "") for name, count in calls.items()]
    return _create_batch(conn_or_pool, schema, items, report)
