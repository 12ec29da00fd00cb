"""
Schema qualification for converted Access SQL.

  - Table references after FROM / JOIN / INTO / UPDATE / TABLE become schema."table"
    (canonical name). FROM/JOIN/UPDATE references without an alias get one (the canonical
    name) so that Table.Column references keep resolving; INTO targets never get an alias.
  - Comma-joined FROM lists are followed from an already qualified table.
  - Calls to functions that are neither PostgreSQL built-ins nor SQL keywords become
    "schema"."function"(...) so they resolve against migrated VBA code (or its stubs).

Already-qualified names, SQL keywords, quoted spans and the FROM inside
EXTRACT/SUBSTRING/TRIM/OVERLAY/POSITION are left alone, so qualify(qualify(x)) == qualify(x).
"""

from __future__ import annotations

import logging
import re

from access_sql_scanner import (
    enclosing_call_name,
    is_inside_quotes,
    quote_ident,
    render_schema,
    sanitize_name,
)

log = logging.getLogger("access_to_pg.qualify")

SQL_RESERVED = frozenset({
    "all", "analyse", "analyze", "and", "any", "array", "as", "asc", "between", "both", "by",
    "case", "cast", "check", "collate", "column", "constraint", "create", "cross", "current_date",
    "current_role", "current_time", "current_timestamp", "current_user", "default", "delete",
    "desc", "distinct", "do", "drop", "else", "end", "except", "exists", "false", "fetch", "for",
    "from", "full", "grant", "group", "having", "ilike", "in", "inner", "insert", "intersect",
    "into", "is", "join", "lateral", "leading", "left", "like", "limit", "localtime",
    "localtimestamp", "natural", "not", "null", "offset", "on", "only", "or", "order", "outer",
    "over", "partition", "placing", "references", "returning", "right", "select", "session_user",
    "set", "similar", "some", "symmetric", "table", "then", "to", "trailing", "true", "union",
    "unique", "update", "user", "using", "values", "variadic", "when", "where", "window", "with",
    "filter", "within", "escape", "nulls", "first", "last",
})

PG_BUILTINS = frozenset({
    # string
    "length", "char_length", "octet_length", "lower", "upper", "initcap", "substring", "substr",
    "position", "strpos", "left", "right", "trim", "ltrim", "rtrim", "btrim", "replace", "repeat",
    "reverse", "ascii", "chr", "concat", "concat_ws", "split_part", "lpad", "rpad", "translate",
    "overlay", "format", "md5", "regexp_replace", "regexp_matches", "regexp_match", "to_char",
    "to_number", "to_date", "to_timestamp", "quote_ident", "quote_literal",
    # null / conditional
    "coalesce", "nullif", "greatest", "least",
    # numeric
    "abs", "round", "floor", "ceil", "ceiling", "trunc", "sign", "sqrt", "ln", "log", "exp",
    "power", "mod", "random", "div",
    # date / time
    "now", "make_date", "make_time", "make_timestamp", "make_interval", "extract", "date_part",
    "date_trunc", "age", "isfinite", "justify_days",
    # aggregates / window
    "count", "sum", "avg", "min", "max", "string_agg", "array_agg", "bool_and", "bool_or",
    "every", "row_number", "rank", "dense_rank", "lag", "lead", "first_value", "last_value",
    "ntile", "first_agg", "last_agg",
    # casts / type names used with a modifier
    "cast", "numeric", "decimal", "varchar", "char", "character", "timestamp", "time",
    "interval", "bit", "float", "date", "int", "integer", "bigint", "smallint",
    # set-returning / constructors
    "generate_series", "unnest", "row", "array", "json_build_object", "jsonb_build_object",
    "exists", "in", "any", "all", "some", "values",
})

FROM_EXEMPT_CALLS = frozenset({"extract", "substring", "trim", "overlay", "position"})

_NAME = r'(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)(?![\w$])'

# alias position: any name except a keyword that starts the next clause
_ALIAS = r"(?!(?:" + "|".join(sorted(SQL_RESERVED)) + r")(?![\w$]))" + _NAME

_TABLE_REF_RE = re.compile(
    r"\b(FROM|JOIN|INTO|UPDATE|TABLE)(\s+\(*\s*)(" + _NAME + r")(\s*\.\s*" + _NAME + r")?"
    r"(\s+(?:AS\s+)?" + _ALIAS + r")?",
    re.IGNORECASE,
)

_IS_DISTINCT_TAIL_RE = re.compile(r"\bIS\s+(?:NOT\s+)?DISTINCT\s*$", re.IGNORECASE)

_FUNC_CALL_RE = re.compile(r"(?<![\w.\"$:])([A-Za-z_][\w$]*)(\s*)\(")

MAX_COMMA_PASSES = 50


def _unquote(name: str) -> tuple[str, bool]:
    if name.startswith('"') and name.endswith('"'):
        return name[1:-1].replace('""', '"'), True
    return name, False


def _alias_for(canonical: str) -> str:
    return quote_ident(canonical) if canonical in SQL_RESERVED else canonical


def _qualify_table_refs(sql: str, schema: str) -> str:
    prefix = render_schema(schema)

    def repl(m: re.Match) -> str:
        keyword, gap, name, dotted, alias_clause = m.groups()
        text = m.string
        if dotted or is_inside_quotes(text, m.start()):
            return m.group(0)
        kw = keyword.upper()
        if kw == "FROM":
            if enclosing_call_name(text, m.start()) in FROM_EXEMPT_CALLS:
                return m.group(0)
            if _IS_DISTINCT_TAIL_RE.search(text[:m.start()]):
                return m.group(0)
        bare, quoted = _unquote(name)
        canonical = sanitize_name(bare)
        if not canonical or (not quoted and canonical in SQL_RESERVED):
            return m.group(0)
        qualified = f'{prefix}."{canonical}"'
        log.debug("[QUALIFY] %s %s -> %s", kw, name, qualified)
        if kw in ("INTO", "TABLE") or alias_clause:
            return keyword + gap + qualified + (alias_clause or "")
        return keyword + gap + qualified + " " + _alias_for(canonical)

    return _TABLE_REF_RE.sub(repl, sql)


def _qualify_comma_lists(sql: str, schema: str) -> str:
    prefix = re.escape(render_schema(schema))
    comma_re = re.compile(
        r"(?<![\w\"$])" + prefix + r'\."(?:[^"]|"")+"(?:\s+(?:AS\s+)?[A-Za-z_][\w$]*(?![\w$]))?\s*,\s*'
        r"(" + _NAME + r")(?!\s*\.)(?!\s*\()(\s+(?:AS\s+)?" + _ALIAS + r")?",
        re.IGNORECASE,
    )

    def repl(m: re.Match) -> str:
        head = m.string[m.start():m.start(1)]
        name, alias_clause = m.group(1), m.group(2)
        if is_inside_quotes(m.string, m.start()):
            return m.group(0)
        bare, quoted = _unquote(name)
        canonical = sanitize_name(bare)
        if not canonical or (not quoted and canonical in SQL_RESERVED):
            return m.group(0)
        qualified = f'{render_schema(schema)}."{canonical}"'
        if alias_clause:
            return head + qualified + alias_clause
        return head + qualified + " " + _alias_for(canonical)

    for _ in range(MAX_COMMA_PASSES):
        out = comma_re.sub(repl, sql)
        if out == sql:
            break
        sql = out
    return sql


def _qualify_function_calls(sql: str, schema: str) -> str:
    qschema = quote_ident(schema)

    def repl(m: re.Match) -> str:
        name, space = m.group(1), m.group(2)
        lower = name.lower()
        if lower in PG_BUILTINS or lower in SQL_RESERVED or lower.startswith("__"):
            return m.group(0)
        if is_inside_quotes(m.string, m.start()):
            return m.group(0)
        return f'{qschema}."{sanitize_name(name)}"{space}('

    return _FUNC_CALL_RE.sub(repl, sql)


def qualify(sql: str, schema: str) -> str:
    """Schema-qualify table references and user-defined function calls in converted SQL."""
    if not schema:
        raise ValueError("schema name is required for qualification")
    if not sql:
        return sql
    sql = _qualify_table_refs(sql, schema)
    sql = _qualify_comma_lists(sql, schema)
    return _qualify_function_calls(sql, schema)


def qualify_tables(sql: str, schema: str) -> str:
    """Table references only (used for expressions that must not touch function names)."""
    if not schema:
        raise ValueError("schema name is required for qualification")
    return _qualify_comma_lists(_qualify_table_refs(sql, schema), schema)
