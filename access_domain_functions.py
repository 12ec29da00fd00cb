"""
Domain aggregate functions (DLookUp, DCount, DSum, DAvg, DMin, DMax, DFirst, DLast)
-> scalar PostgreSQL subqueries.

    DLookUp("Total", "Orders", "[OrderID]=" & [OrderID])
      -> (SELECT "total" FROM myschema."orders" WHERE "orderid" = p_orderid LIMIT 1)

Inside a criteria string the two halves of a bracketed name mean different things:
a [Name] inside a quoted fragment is a column of the domain table, while a bare [Name]
concatenated into the string is a value supplied by the caller and becomes the
parameter p_name (collected in param_refs).

Also holds the control-source expression compiler (translate_expression /
build_function_ddl) which turns "=DLookUp(...)" expressions into SQL functions.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from access_function_map import DOMAIN_FUNCTION_NAMES, DEFAULT_PG_TYPE
from access_query_params import ResolvedParameter, extract_session_variables
from access_sql_rewrite import (
    add_warning,
    apply_catalog,
    convert_date_literals,
    convert_like_wildcards,
    rewrite,
)
from access_sql_scanner import (
    find_call,
    param_name,
    quote_ident,
    quoted_segments,
    render_schema,
    sanitize_name,
    split_top_level,
    strip_quotes,
    sub_outside_quotes,
    unquote_literal,
)

log = logging.getLogger("access_to_pg.domain")

DOMAIN_CALL_RE = re.compile(
    r"(?<![\w.\"$])(" + "|".join(DOMAIN_FUNCTION_NAMES) + r")\s*\(", re.IGNORECASE
)

PLACEHOLDER_PREFIX = "__domain_fn_"
MAX_DOMAIN_CALLS = 200

_BARE_BRACKET_RE = re.compile(r"\[([^\]]+)\]")
_SIMPLE_FIELD_RE = re.compile(r"\[[^\]]+\]|[A-Za-z_][\w ]*")
_FORM_CHAIN_RE = re.compile(
    r"(?<![\w\].\"!])\[?(?:Forms|Reports|Form|Report|Parent|Me)\]?"
    r"(?:\s*[!.]\s*(?:\[[^\]]+\]|[A-Za-z_]\w*))+",
    re.IGNORECASE,
)
_COMPARISON_RE = r"\s*(<>|<=|>=|=|<|>)\s*"


@dataclass
class DomainCompilation:
    """Result of compiling every domain call in a piece of SQL."""
    sql: str
    param_refs: list[str] = field(default_factory=list)
    tables: dict[str, str] = field(default_factory=dict)


@dataclass
class CompiledExpression:
    sql: str
    params: list[ResolvedParameter]
    return_type: str
    warnings: list[str] = field(default_factory=list)


def has_domain_functions(expression: Optional[str]) -> bool:
    if not expression or not isinstance(expression, str):
        return False
    return bool(DOMAIN_CALL_RE.search(expression))


def split_on_concat(text: str) -> list[str]:
    """Split on the Access & operator at top level (quotes and parentheses respected); parts trimmed."""
    return [p.strip() for p in split_top_level(text, "&") if p.strip()]


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------

def _add_ref(param_refs: list, name: str) -> None:
    if name not in param_refs:
        param_refs.append(name)


def _fragment_columns_to_sql(fragment: str) -> str:
    """Quoted criteria text: ""x"" literals -> 'x', [Col] -> "col" (domain-table column)."""
    fragment = re.sub(
        r'"((?:[^"]|"")*)"',
        lambda m: "'" + m.group(1).replace('""', '"').replace("'", "''") + "'",
        fragment,
    )
    fragment = fragment.replace('"', "'")
    fragment = _BARE_BRACKET_RE.sub(lambda m: quote_ident(sanitize_name(m.group(1))), fragment)
    return re.sub(r"\b(True|False)\b", lambda m: m.group(1).lower(), fragment, flags=re.IGNORECASE)


def _expression_params_to_sql(expr: str, param_refs: list, warnings: Optional[list]) -> str:
    """Unquoted criteria operand: form references and [Name] become caller parameters."""
    def form_ref(m: re.Match) -> str:
        last = re.split(r"\s*[!.]\s*", m.group(0))[-1].strip("[]")
        _add_ref(param_refs, last)
        return param_name(last)

    expr = _FORM_CHAIN_RE.sub(form_ref, expr)

    def bracket(m: re.Match) -> str:
        name = m.group(1)
        if name.startswith("p_"):
            return name
        _add_ref(param_refs, name)
        return param_name(name)

    expr = _BARE_BRACKET_RE.sub(bracket, expr)
    expr = re.sub(r"\b(True|False)\b", lambda m: m.group(1).lower(), expr, flags=re.IGNORECASE)
    return apply_catalog(expr, warnings, legacy=True)


def _quote_open(sql: str) -> bool:
    return sql.count("'") % 2 == 1


def translate_criteria(criteria: Optional[str], param_refs: list, warnings: Optional[list] = None) -> str:
    """
    Translate a domain-function criteria argument to a WHERE predicate.

    The argument is split on top-level & first; quoted parts contribute SQL text and
    unquoted parts (bare [Name], form references, expressions) contribute values. A value
    spliced between a closing and an opening quote (or # date delimiters) replaces the
    literal outright; one spliced into the middle of a literal is concatenated into it.
    """
    if criteria is None or not criteria.strip():
        return "true"
    pieces: list[list[str]] = []
    for part in split_on_concat(criteria.strip()):
        literal = unquote_literal(part)
        if literal is not None:
            pieces.append(["sql", _fragment_columns_to_sql(literal)])
        elif _BARE_BRACKET_RE.fullmatch(part) and not part[1:-1].startswith("p_"):
            name = part[1:-1]
            _add_ref(param_refs, name)
            pieces.append(["value", param_name(name)])
        else:
            # form references and other expressions
            pieces.append(["value", _expression_params_to_sql(part, param_refs, warnings)])

    out = ""
    for i, (kind, text) in enumerate(pieces):
        if kind == "sql":
            out += text
            continue
        nxt = pieces[i + 1] if i + 1 < len(pieces) and pieces[i + 1][0] == "sql" else None
        if _quote_open(out):
            if out.endswith("'") and nxt is not None and nxt[1].startswith("'"):
                out = out[:-1] + text
                nxt[1] = nxt[1][1:]
            else:
                out += "' || " + text + " || '"
        elif out.endswith("#") and nxt is not None and nxt[1].startswith("#"):
            out = out[:-1] + text
            nxt[1] = nxt[1][1:]
        else:
            out += text

    out = convert_date_literals(out)
    out = convert_like_wildcards(out, warnings)
    out = sub_outside_quotes(_COMPARISON_RE, r" \1 ", out, delimiters="'\"").strip()
    return out or "true"


# ---------------------------------------------------------------------------
# Single call
# ---------------------------------------------------------------------------

def _field_to_sql(arg: str, warnings: Optional[list]) -> str:
    text = arg.strip()
    literal = unquote_literal(text)
    if literal is not None:
        text = literal.strip()
    if not text or text == "*":
        return "*"
    if _SIMPLE_FIELD_RE.fullmatch(text):
        return quote_ident(sanitize_name(strip_quotes(text)))
    return rewrite(text, warnings, legacy=True)


def _domain_table(arg: str) -> str:
    text = arg.strip()
    literal = unquote_literal(text)
    if literal is not None:
        text = literal.strip()
    return sanitize_name(strip_quotes(text))


def translate_domain_function(
    fn_name: str,
    args: list,
    schema: str,
    param_refs: list,
    order_keys: Optional[dict] = None,
    warnings: Optional[list] = None,
) -> str:
    """Compile one domain call (already split into argument texts) to a parenthesized subquery."""
    fn = fn_name.lower()
    if len(args) < 2:
        raise ValueError(f"{fn_name}() needs at least a field and a domain")
    table = _domain_table(args[1])
    if not table:
        raise ValueError(f"{fn_name}() has an empty domain")
    target = f'{render_schema(schema)}."{table}"'
    expr = _field_to_sql(args[0], warnings)
    where = translate_criteria(args[2], param_refs, warnings) if len(args) > 2 else "true"

    if fn == "dlookup":
        return f"(SELECT {expr} FROM {target} WHERE {where} LIMIT 1)"
    if fn in ("dfirst", "dlast"):
        key = (order_keys or {}).get(table)
        if key:
            order = quote_ident(sanitize_name(key))
        else:
            order = expr
            add_warning(warnings, f"{fn_name}() on {table} has no ordering key; ordered by the looked-up field")
        direction = " DESC" if fn == "dlast" else ""
        return f"(SELECT {expr} FROM {target} WHERE {where} ORDER BY {order}{direction} LIMIT 1)"
    if fn == "dcount":
        return f"(SELECT COUNT({expr}) FROM {target} WHERE {where})"
    if fn == "dsum":
        return f"(SELECT COALESCE(SUM({expr}), 0) FROM {target} WHERE {where})"
    if fn == "davg":
        return f"(SELECT AVG({expr}) FROM {target} WHERE {where})"
    if fn == "dmin":
        return f"(SELECT MIN({expr}) FROM {target} WHERE {where})"
    if fn == "dmax":
        return f"(SELECT MAX({expr}) FROM {target} WHERE {where})"
    raise ValueError(f"unknown domain function: {fn_name}")


# ---------------------------------------------------------------------------
# Whole text
# ---------------------------------------------------------------------------

def compile_domain_functions(
    sql: str,
    schema: str,
    order_keys: Optional[dict] = None,
    warnings: Optional[list] = None,
    placeholders: Optional[dict] = None,
) -> DomainCompilation:
    """
    Replace every domain call in *sql* with its subquery. When *placeholders* is given,
    each subquery is stored there and an opaque token (__domain_fn_N__) is left in the
    text instead, so later rewrite passes cannot touch the compiled SQL.
    """
    result = DomainCompilation(sql=sql)
    pos = 0
    for _ in range(MAX_DOMAIN_CALLS):
        call = find_call(result.sql, DOMAIN_CALL_RE, pos)
        if call is None:
            break
        args = list(call.args)
        # nested domain calls inside the arguments are compiled first
        for i, arg in enumerate(args):
            if has_domain_functions(arg):
                nested = compile_domain_functions(arg, schema, order_keys, warnings)
                args[i] = nested.sql
                for ref in nested.param_refs:
                    _add_ref(result.param_refs, ref)
                    result.tables.setdefault(ref, nested.tables.get(ref, ""))
        before = list(result.param_refs)
        try:
            subquery = translate_domain_function(call.name, args, schema, result.param_refs, order_keys, warnings)
        except ValueError as e:
            add_warning(warnings, f"{call.name}() replaced with NULL: {e}")
            subquery = "NULL"
        table = _domain_table(args[1]) if len(args) > 1 else ""
        for ref in result.param_refs:
            if ref not in before:
                result.tables.setdefault(ref, table)
        log.debug("[DOMAIN] %s -> %s", result.sql[call.start:call.end][:80], subquery[:120])
        if placeholders is not None:
            token = f"{PLACEHOLDER_PREFIX}{len(placeholders)}__"
            placeholders[token] = subquery
            subquery = token
        result.sql = result.sql[:call.start] + subquery + result.sql[call.end:]
        pos = call.start + len(subquery)
    return result


def restore_placeholders(sql: str, placeholders: dict) -> str:
    for token, subquery in placeholders.items():
        sql = sql.replace(token, subquery)
    return sql


# ---------------------------------------------------------------------------
# Control-source expressions
# ---------------------------------------------------------------------------

def _return_type(sql: str) -> str:
    lower = sql.lower()
    if re.search(r"\bcount\s*\(", lower):
        return "bigint"
    if re.search(r"\b(?:sum|avg)\s*\(", lower):
        return "numeric"
    return DEFAULT_PG_TYPE


def translate_expression(
    expression: str,
    schema: str,
    column_types: Optional[dict] = None,
    order_keys: Optional[dict] = None,
) -> CompiledExpression:
    """
    Compile an "=..." control-source expression to a SQL body. Every bracketed field
    outside the domain calls (and every caller value inside their criteria) becomes a
    parameter typed from *column_types*.
    """
    if not schema:
        raise ValueError("schema name is required")
    warnings: list[str] = []
    expr = (expression or "").strip()
    if expr.startswith("="):
        expr = expr[1:].strip()
    expr, session_params = extract_session_variables(expr)

    placeholders: dict = {}
    compiled = compile_domain_functions(expr, schema, order_keys, warnings, placeholders)
    refs = list(compiled.param_refs)

    def outer_field(m: re.Match) -> str:
        name = m.group(1)
        if name.startswith("p_"):
            return name
        _add_ref(refs, name)
        return param_name(name)

    outer = _FORM_CHAIN_RE.sub(lambda m: "[" + re.split(r"\s*[!.]\s*", m.group(0))[-1].strip("[]") + "]",
                               compiled.sql)
    outer = "".join(chunk if quoted else _BARE_BRACKET_RE.sub(outer_field, chunk)
                    for quoted, chunk in quoted_segments(outer, "'\""))
    sql = restore_placeholders(rewrite(outer, warnings, legacy=True), placeholders)

    types = {sanitize_name(k): v for k, v in (column_types or {}).items()}
    params: list[ResolvedParameter] = []
    seen = set()
    for sp in session_params:
        if sp.target_name not in seen:
            seen.add(sp.target_name)
            params.append(ResolvedParameter(sp.source_name, sp.target_name,
                                            types.get(sanitize_name(sp.source_name), DEFAULT_PG_TYPE)))
    for ref in refs:
        target = param_name(ref)
        if target in seen:
            continue
        seen.add(target)
        params.append(ResolvedParameter(ref, target, types.get(sanitize_name(ref), DEFAULT_PG_TYPE)))
    return CompiledExpression(sql=sql, params=params, return_type=_return_type(sql), warnings=warnings)


def build_function_ddl(function_name: str, schema: str, sql_body: str,
                       params: list, return_type: str) -> str:
    """CREATE OR REPLACE FUNCTION wrapping a compiled expression body."""
    qualified = f"{quote_ident(schema)}.{quote_ident(sanitize_name(function_name))}"
    param_list = ", ".join(p.declaration() for p in params)
    return (f"CREATE OR REPLACE FUNCTION {qualified}({param_list})\n"
            f"RETURNS {return_type} AS $$\n"
            f"  SELECT {sql_body};\n"
            f"$$ LANGUAGE SQL STABLE")
