"""
DDL synthesis: wrap a converted query body in the PostgreSQL object that matches its
legacy classification and shape.

    make-table (code 80 or SELECT ... INTO t)    plpgsql function: drop t, CREATE TABLE t AS ..., return row count
    crosstab (code 16 / TRANSFORM)               commented passthrough (no object)
    update / delete / append (48 / 32 / 64)      plpgsql function returning the affected row count
    select with parameters                       LANGUAGE SQL STABLE function, RETURNS TABLE(...) or SETOF record
    select without parameters, union (128)       view
    anything else                                commented passthrough (no object)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from access_query_params import ResolvedParameter, lookup_column_type
from access_sql_rewrite import add_warning
from access_sql_scanner import (
    find_top_level_keyword_span,
    iter_top_level_matches,
    parse_argument_list,
    quote_ident,
    render_schema,
    sanitize_name,
)

log = logging.getLogger("access_to_pg.ddl")

# Legacy query classification codes
QUERY_SELECT = 0
QUERY_CROSSTAB = 16
QUERY_DELETE = 32
QUERY_UPDATE = 48
QUERY_APPEND = 64
QUERY_MAKE_TABLE = 80
QUERY_UNION = 128

QUERY_TYPE_LABELS = {
    QUERY_SELECT: "select",
    QUERY_CROSSTAB: "crosstab",
    QUERY_DELETE: "delete",
    QUERY_UPDATE: "update",
    QUERY_APPEND: "append",
    QUERY_MAKE_TABLE: "make-table",
    QUERY_UNION: "union",
}

# Object shapes
SHAPE_MAKE_TABLE = "make_table"
SHAPE_CROSSTAB = "crosstab"
SHAPE_ACTION = "action"
SHAPE_TABLE_FUNCTION = "table_function"
SHAPE_VIEW = "view"
SHAPE_UNSUPPORTED = "unsupported"

OBJECT_VIEW = "view"
OBJECT_FUNCTION = "function"
OBJECT_PROCEDURE = "procedure"
OBJECT_NONE = "none"

CUSTOM_AGGREGATES = ("first_agg", "last_agg")

_INTO_TARGET_RE = re.compile(
    r'\bINTO\s+(?:(?:"(?:[^"]|"")+"|[A-Za-z_]\w*)\s*\.\s*)?("(?:[^"]|"")+"|[A-Za-z_]\w*)(?:\s+|$)',
    re.IGNORECASE,
)


@dataclass
class DdlPlan:
    statements: list[str]
    object_kind: str
    helper_functions: list[str] = field(default_factory=list)


def _leading_keyword(sql: str) -> str:
    m = re.match(r"\s*\(*\s*([A-Za-z]+)", sql or "")
    return m.group(1).upper() if m else ""


def _top_level_into(sql: str) -> Optional[re.Match]:
    for m in iter_top_level_matches(sql, _INTO_TARGET_RE):
        return m
    return None


def classify_query(code: int, sql: str, has_params: bool) -> str:
    """Object shape for a query; the make-table check precedes the plain SELECT checks."""
    lead = _leading_keyword(sql)
    if code == QUERY_MAKE_TABLE or (lead == "SELECT" and _top_level_into(sql) is not None):
        return SHAPE_MAKE_TABLE
    if code == QUERY_CROSSTAB or lead == "TRANSFORM":
        return SHAPE_CROSSTAB
    if code in (QUERY_UPDATE, QUERY_DELETE, QUERY_APPEND) or lead in ("UPDATE", "DELETE", "INSERT"):
        return SHAPE_ACTION
    if lead in ("SELECT", "WITH") and has_params:
        return SHAPE_TABLE_FUNCTION
    if lead in ("SELECT", "WITH") or code == QUERY_UNION:
        return SHAPE_VIEW
    return SHAPE_UNSUPPORTED


# ---------------------------------------------------------------------------
# Projection inference
# ---------------------------------------------------------------------------

def split_select_list(sql: str) -> Optional[list[str]]:
    """Items of the outermost SELECT list (between SELECT [DISTINCT] and the top-level FROM), or None."""
    m = re.match(r"\s*SELECT\s+(?:DISTINCT\s+(?:ON\s*\([^)]*\)\s*)?|ALL\s+)?", sql, re.IGNORECASE)
    if not m:
        return None
    span = find_top_level_keyword_span(sql, "FROM", m.end())
    end = span[0] if span else len(sql)
    items = parse_argument_list(sql[m.end():end])
    return items or None


def _projection_column(item: str) -> Optional[tuple[str, Optional[str]]]:
    """(output column name, source column text for typing) for one select item, or None if not inferable."""
    item = item.strip()
    m = re.search(r'\bAS\s+("(?:[^"]|"")+"|[A-Za-z_]\w*)\s*$', item, re.IGNORECASE)
    if m:
        source = item[:m.start()].strip()
        return sanitize_name(m.group(1).strip('"')), source
    m = re.search(r'\.\s*("(?:[^"]|"")+"|[A-Za-z_]\w*)\s*$', item)
    if m and re.fullmatch(r'(?:"(?:[^"]|"")+"|[A-Za-z_]\w*)(?:\s*\.\s*(?:"(?:[^"]|"")+"|[A-Za-z_]\w*))+', item):
        return sanitize_name(m.group(1).strip('"')), item
    if re.fullmatch(r'"(?:[^"]|"")+"|[A-Za-z_]\w*', item):
        return sanitize_name(item.strip('"')), item
    return None


def extract_return_columns(sql: str, column_types: Optional[dict] = None) -> Optional[list[str]]:
    """
    RETURNS TABLE column list for a SELECT ('"name" type' strings), typed from *column_types*
    where the projected expression is a plain column. None when any item cannot be named.
    """
    items = split_select_list(sql)
    if not items:
        return None
    cols = []
    for item in items:
        found = _projection_column(item)
        if not found or not found[0]:
            return None
        name, source = found
        pg_type = "text"
        if source and re.fullmatch(r'(?:"(?:[^"]|"")+"|[A-Za-z_]\w*)(?:\s*\.\s*(?:"(?:[^"]|"")+"|[A-Za-z_]\w*))*', source):
            pg_type = lookup_column_type(source, column_types) or "text"
        cols.append(f"{quote_ident(name)} {pg_type}")
    return cols


# ---------------------------------------------------------------------------
# Custom aggregates
# ---------------------------------------------------------------------------

def needs_custom_aggregates(sql: str) -> bool:
    return bool(re.search(r"\b(?:first_agg|last_agg)\"?\s*\(", sql or "", re.IGNORECASE))


def custom_aggregate_statements(schema: str) -> list[str]:
    """Idempotent DO blocks creating first_agg / last_agg in *schema* when missing."""
    qs = render_schema(schema)
    literal = qs.replace("'", "''")
    return [
        "DO $$ BEGIN\n"
        f"  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'first_agg_sfunc' AND pronamespace = '{literal}'::regnamespace) THEN\n"
        f"    CREATE FUNCTION {qs}.first_agg_sfunc(anyelement, anyelement) RETURNS anyelement AS 'SELECT COALESCE($1, $2)' LANGUAGE SQL IMMUTABLE STRICT;\n"
        f"    CREATE AGGREGATE {qs}.first_agg(anyelement) (SFUNC = {qs}.first_agg_sfunc, STYPE = anyelement);\n"
        "  END IF;\n"
        "END $$",
        "DO $$ BEGIN\n"
        f"  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'last_agg_sfunc' AND pronamespace = '{literal}'::regnamespace) THEN\n"
        f"    CREATE FUNCTION {qs}.last_agg_sfunc(anyelement, anyelement) RETURNS anyelement AS 'SELECT $2' LANGUAGE SQL IMMUTABLE STRICT;\n"
        f"    CREATE AGGREGATE {qs}.last_agg(anyelement) (SFUNC = {qs}.last_agg_sfunc, STYPE = anyelement);\n"
        "  END IF;\n"
        "END $$",
    ]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _signature(params: list[ResolvedParameter]) -> str:
    return "(" + ", ".join(p.declaration() for p in params) + ")"


def build_view(sql: str, schema: str, name: str) -> str:
    return f'CREATE OR REPLACE VIEW {render_schema(schema)}."{name}" AS\n{sql}'


def build_table_function(sql: str, schema: str, name: str, params: list[ResolvedParameter],
                         column_types: Optional[dict] = None,
                         warnings: Optional[list] = None) -> str:
    cols = None
    try:
        cols = extract_return_columns(sql, column_types)
    except (ValueError, IndexError) as e:
        add_warning(warnings, f"column inference failed for {name}: {e}")
    if cols:
        returns = f"RETURNS TABLE({', '.join(cols)})"
    else:
        returns = "RETURNS SETOF record"
        add_warning(warnings, "Could not parse SELECT columns; using RETURNS SETOF record, manual definition needed")
    return (f'CREATE OR REPLACE FUNCTION {render_schema(schema)}."{name}"{_signature(params)}\n'
            f"{returns} AS $$\n{sql}\n$$ LANGUAGE SQL STABLE")


def build_action_procedure(sql: str, schema: str, name: str, params: list[ResolvedParameter]) -> str:
    return (f'CREATE OR REPLACE FUNCTION {render_schema(schema)}."{name}"{_signature(params)}\n'
            "RETURNS integer AS $$\n"
            "DECLARE _count integer;\n"
            "BEGIN\n"
            f"  {sql};\n"
            "  GET DIAGNOSTICS _count = ROW_COUNT;\n"
            "  RETURN _count;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql VOLATILE")


def make_table_target(sql: str) -> Optional[tuple[str, str]]:
    """(target table canonical name, SELECT with the INTO clause removed) or None."""
    m = _top_level_into(sql)
    if not m:
        return None
    target = sanitize_name(m.group(1).strip('"'))
    if not target:
        return None
    select = (sql[:m.start()].rstrip() + " " + sql[m.end():].lstrip()).strip()
    return target, select


def build_make_table_procedure(sql: str, schema: str, name: str, params: list[ResolvedParameter]) -> Optional[str]:
    found = make_table_target(sql)
    if not found:
        return None
    target, select = found
    qs = render_schema(schema)
    return (f'CREATE OR REPLACE FUNCTION {qs}."{name}"{_signature(params)}\n'
            "RETURNS integer AS $$\n"
            "DECLARE _count integer;\n"
            "BEGIN\n"
            f'  DROP TABLE IF EXISTS {qs}."{target}";\n'
            f'  CREATE TABLE {qs}."{target}" AS\n'
            f"  {select};\n"
            "  GET DIAGNOSTICS _count = ROW_COUNT;\n"
            "  RETURN _count;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql VOLATILE")


def commented_passthrough(sql: str, reason: str) -> str:
    lines = (sql or "").splitlines() or [""]
    return f"-- {reason}\n" + "\n".join("-- " + line for line in lines)


def synthesize_ddl(
    code: int,
    sql: str,
    schema: str,
    name: str,
    params: list[ResolvedParameter],
    column_types: Optional[dict] = None,
    original_sql: Optional[str] = None,
    warnings: Optional[list] = None,
) -> DdlPlan:
    """Statements (helper aggregates first) and object kind for one converted query body."""
    shape = classify_query(code, sql, bool(params))
    label = QUERY_TYPE_LABELS.get(code, str(code))
    log.debug("[DDL] %s: code=%s shape=%s params=%d", name, code, shape, len(params))
    source = original_sql if original_sql is not None else sql

    if shape == SHAPE_CROSSTAB:
        add_warning(warnings, "Crosstab queries have no direct PostgreSQL equivalent; manual conversion needed")
        return DdlPlan([commented_passthrough(source, f"Crosstab query {name} not converted")], OBJECT_NONE)
    if shape == SHAPE_UNSUPPORTED:
        add_warning(warnings, f"Unsupported query type {label}; manual conversion needed")
        return DdlPlan([commented_passthrough(source, f"Query {name} ({label}) not converted")], OBJECT_NONE)

    helpers: list[str] = []
    statements: list[str] = []
    if needs_custom_aggregates(sql):
        statements.extend(custom_aggregate_statements(schema))
        helpers = [f"{render_schema(schema)}.{agg}" for agg in CUSTOM_AGGREGATES]

    if shape == SHAPE_MAKE_TABLE:
        ddl = build_make_table_procedure(sql, schema, name, params)
        if ddl is None:
            add_warning(warnings, "Make-table query: could not parse INTO target table")
            return DdlPlan([commented_passthrough(source, f"Make-table query {name} could not be converted")],
                           OBJECT_NONE)
        return DdlPlan(statements + [ddl], OBJECT_PROCEDURE, helpers)
    if shape == SHAPE_ACTION:
        return DdlPlan(statements + [build_action_procedure(sql, schema, name, params)], OBJECT_PROCEDURE, helpers)
    if shape == SHAPE_TABLE_FUNCTION:
        ddl = build_table_function(sql, schema, name, params, column_types, warnings)
        return DdlPlan(statements + [ddl], OBJECT_FUNCTION, helpers)
    return DdlPlan(statements + [build_view(sql, schema, name)], OBJECT_VIEW, helpers)
