"""
Query design parser: PostgreSQL view bodies (single SELECT statements) -> the structure a
visual query designer edits (tables, joins, fields, criteria, grouping, sorting).

Handles simple SELECTs with JOINs, WHERE, GROUP BY, HAVING and ORDER BY, quoted
identifiers, schema-prefixed names and aliases. CTEs (WITH), set operations
(UNION/INTERSECT/EXCEPT) and anything that is not a SELECT come back with
parseable=False and the original text; parsing never raises.

Subqueries in FROM are dropped from the table list, and projection items that
contain a scalar subquery are omitted from the field list; the rest of the model
is still returned.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Optional

from access_sql_scanner import (
    find_matching_close,
    find_top_level_keyword,
    find_top_level_keyword_span,
    is_balanced,
    iter_top_level_matches,
    split_top_level,
    split_top_level_keyword,
)

log = logging.getLogger("access_to_pg.design")

_NAME = r'(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)'

SQL_KEYWORDS = frozenset({
    "select", "from", "where", "join", "on", "and", "or", "not", "in",
    "as", "left", "right", "inner", "outer", "full", "cross",
    "group", "order", "by", "having", "limit", "offset", "union",
    "case", "when", "then", "else", "end", "between", "like", "ilike", "is",
    "distinct", "all", "exists", "null", "true", "false", "asc", "desc",
    "insert", "update", "delete", "into", "values", "set", "with",
})

_FROM_END_KEYWORDS = ("WHERE", "GROUP BY", "HAVING", "WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")
_WHERE_END_KEYWORDS = ("GROUP BY", "HAVING", "WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")
_GROUP_END_KEYWORDS = ("HAVING", "WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")
_HAVING_END_KEYWORDS = ("WINDOW", "ORDER BY", "LIMIT", "OFFSET", "FETCH")
_ORDER_END_KEYWORDS = ("LIMIT", "OFFSET", "FETCH")

_SET_OPERATION_RE = re.compile(r"(?<![\w$.\"])(?:UNION|INTERSECT|EXCEPT)(?![\w$])", re.IGNORECASE)
_SELECT_HEAD_RE = re.compile(r"\s*SELECT\s+(DISTINCT\s+(?:ON\s*\([^)]*\)\s*)?|ALL\s+)?", re.IGNORECASE)
_JOIN_RE = re.compile(
    r"(?<![\w$.\"])((?:NATURAL\s+)?(?:(?:LEFT|RIGHT|FULL)(?:\s+OUTER)?\s+|INNER\s+|CROSS\s+)?JOIN)(?![\w$])",
    re.IGNORECASE,
)
_TABLE_REF_RE = re.compile(
    r"^(?:ONLY\s+)?(?:(" + _NAME + r")\s*\.\s*)?(" + _NAME + r")(?:\s+(?:AS\s+)?(" + _NAME + r"))?$",
    re.IGNORECASE,
)
_JOIN_PAIR_RE = re.compile(
    r"^\(*\s*(?:" + _NAME + r"\s*\.\s*)?(" + _NAME + r")\s*\.\s*(" + _NAME + r")\s*=\s*"
    r"(?:" + _NAME + r"\s*\.\s*)?(" + _NAME + r")\s*\.\s*(" + _NAME + r")\s*\)*$"
)
_EXPLICIT_ALIAS_RE = re.compile(r"(?<![\w$.\"])AS\s+(" + _NAME + r")\s*$", re.IGNORECASE)
_IMPLICIT_ALIAS_RE = re.compile(r"^(.+?)\s+(" + _NAME + r")\s*$", re.DOTALL)
_COLUMN_REF_RE = re.compile(r"^(?:" + _NAME + r"\s*\.\s*)?(" + _NAME + r")\s*\.\s*(" + _NAME + r")$")
_SCALAR_SUBQUERY_RE = re.compile(r"\(\s*SELECT\b", re.IGNORECASE)
_ORDER_DIRECTION_RE = re.compile(r"\s+(ASC|DESC)\s*$", re.IGNORECASE)
_NULLS_ORDER_RE = re.compile(r"\s+NULLS\s+(?:FIRST|LAST)\s*$", re.IGNORECASE)
_CREATE_VIEW_RE = re.compile(
    r"^\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:(?:TEMP|TEMPORARY)\s+)?(?:MATERIALIZED\s+)?VIEW\s+"
    r"(?:IF\s+NOT\s+EXISTS\s+)?(?:" + _NAME + r"\s*\.\s*)?" + _NAME + r"\s*(?:\([^)]*\)\s*)?AS\s+",
    re.IGNORECASE,
)
_OPERATOR_TAIL_RE = re.compile(r"[-+*/%<>=|&,(!~^:]$")


@dataclass
class DesignTable:
    name: str
    alias: Optional[str] = None
    schema: Optional[str] = None


@dataclass
class DesignJoin:
    type: str
    left_table: str
    left_column: str
    right_table: str
    right_column: str


@dataclass
class DesignField:
    expression: str
    table: Optional[str] = None
    alias: Optional[str] = None
    sort_direction: Optional[str] = None


@dataclass
class OrderItem:
    expression: str
    direction: str = "ASC"


@dataclass
class QueryDesignModel:
    parseable: bool
    sql: str
    distinct: bool = False
    tables: list[DesignTable] = field(default_factory=list)
    joins: list[DesignJoin] = field(default_factory=list)
    fields: list[DesignField] = field(default_factory=list)
    where_text: Optional[str] = None
    group_by: Optional[list[str]] = None
    having_text: Optional[str] = None
    order_by: Optional[list[OrderItem]] = None

    def to_dict(self) -> dict:
        if not self.parseable:
            return {"parseable": False, "sql": self.sql}
        return asdict(self)


def _unquote(name: Optional[str]) -> Optional[str]:
    if name and len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('""', '"')
    return name


def _is_keyword(word: str) -> bool:
    return word.lower() in SQL_KEYWORDS


def _clause(sql: str, keyword: str, end_keywords: tuple, start: int = 0) -> Optional[str]:
    """Text between a top-level *keyword* and the next top-level keyword from *end_keywords*."""
    span = find_top_level_keyword_span(sql, keyword, start)
    if span is None:
        return None
    end = len(sql)
    for kw in end_keywords:
        idx = find_top_level_keyword(sql, kw, span[1])
        if idx is not None and idx < end:
            end = idx
    return sql[span[1]:end].strip()


def has_top_level_set_operation(sql: str) -> bool:
    for _ in iter_top_level_matches(sql, _SET_OPERATION_RE):
        return True
    return False


def normalize_join_type(raw: str) -> str:
    upper = re.sub(r"\s+", " ", raw.upper()).strip()
    if "LEFT" in upper:
        return "LEFT JOIN"
    if "RIGHT" in upper:
        return "RIGHT JOIN"
    if "FULL" in upper:
        return "FULL JOIN"
    if "CROSS" in upper:
        return "CROSS JOIN"
    return "INNER JOIN"


def parse_table_ref(text: str) -> Optional[DesignTable]:
    """`[schema.]name [[AS] alias]`; None for subqueries and anything else."""
    text = (text or "").strip()
    if not text or text.startswith("("):
        return None
    m = _TABLE_REF_RE.match(text)
    if not m:
        return None
    alias = _unquote(m.group(3))
    if alias and not m.group(3).startswith('"') and _is_keyword(alias):
        return None
    return DesignTable(name=_unquote(m.group(2)), alias=alias, schema=_unquote(m.group(1)))


def _alias_map(tables: list[DesignTable]) -> dict[str, str]:
    aliases: dict[str, str] = {}
    for t in tables:
        aliases[t.name.lower()] = t.name
        if t.alias:
            aliases[t.alias.lower()] = t.name
    return aliases


def parse_join_condition(on_text: str, tables: list[DesignTable]) -> list[tuple[str, str, str, str]]:
    """Equality pairs (left_table, left_column, right_table, right_column) of an ON condition."""
    aliases = _alias_map(tables)
    pairs = []
    for cond in split_top_level_keyword(on_text, "AND"):
        m = _JOIN_PAIR_RE.match(cond.strip())
        if not m:
            continue
        lq, lc, rq, rc = (_unquote(g) for g in m.groups())
        pairs.append((aliases.get(lq.lower(), lq), lc, aliases.get(rq.lower(), rq), rc))
    return pairs


def _join_group(text: str) -> Optional[str]:
    """Inner text of a parenthesized join group such as `(a JOIN b ON ...)`; None for subqueries."""
    text = text.strip()
    if not text.startswith("(") or find_matching_close(text, 0) != len(text) - 1:
        return None
    inner = text[1:-1].strip()
    if re.match(r"(?:SELECT|WITH|VALUES)\b", inner, re.IGNORECASE):
        return None
    return inner


def extract_tables_and_joins(from_clause: str) -> tuple[list[DesignTable], list[DesignJoin]]:
    tables: list[DesignTable] = []
    joins: list[DesignJoin] = []
    if not from_clause:
        return tables, joins
    _collect_from(from_clause, tables, joins, set())
    return tables, joins


def _collect_from(from_clause: str, tables: list[DesignTable], joins: list[DesignJoin], seen: set) -> None:
    def add_item(text: str) -> None:
        group = _join_group(text)
        if group is not None:
            _collect_from(group, tables, joins, seen)
            return
        t = parse_table_ref(text)
        if t is not None and t.name.lower() not in seen:
            tables.append(t)
            seen.add(t.name.lower())

    matches = list(iter_top_level_matches(from_clause, _JOIN_RE))
    head_end = matches[0].start() if matches else len(from_clause)
    for item in split_top_level(from_clause[:head_end], ","):
        add_item(item)

    for i, m in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(from_clause)
        part = from_clause[m.end():end].strip()
        join_type = normalize_join_type(m.group(1))
        on_idx = find_top_level_keyword(part, "ON")
        table_text = part[:on_idx].strip() if on_idx is not None else part
        on_text = part[on_idx + 2:].strip() if on_idx is not None else None
        add_item(table_text)
        if on_text:
            for lt, lc, rt, rc in parse_join_condition(on_text, tables):
                joins.append(DesignJoin(join_type, lt, lc, rt, rc))


def split_alias(item: str) -> tuple[str, Optional[str]]:
    """(expression, alias) for one projection item: explicit `AS alias`, else an implicit trailing alias."""
    item = item.strip()
    for m in iter_top_level_matches(item, _EXPLICIT_ALIAS_RE):
        return item[:m.start()].strip(), _unquote(m.group(1))
    m = _IMPLICIT_ALIAS_RE.match(item)
    if m:
        expr, candidate = m.group(1).strip(), m.group(2)
        last_word = re.search(r"([A-Za-z_]\w*)\s*$", expr)
        if (is_balanced(expr) and not _OPERATOR_TAIL_RE.search(expr)
                and not (not candidate.startswith('"') and _is_keyword(candidate))
                and not (last_word and _is_keyword(last_word.group(1)))
                and not expr.endswith(".")):
            return expr, _unquote(candidate)
    return item, None


def extract_fields(select_clause: str, tables: list[DesignTable]) -> list[DesignField]:
    if not select_clause:
        return []
    if select_clause.strip() == "*":
        return [DesignField("*")]
    aliases = _alias_map(tables)
    out: list[DesignField] = []
    for part in split_top_level(select_clause, ","):
        if not part.strip():
            continue
        if _SCALAR_SUBQUERY_RE.search(part):
            log.debug("[DESIGN] projection item with a subquery omitted: %s", part.strip()[:80])
            continue
        expression, alias = split_alias(part)
        table = None
        m = _COLUMN_REF_RE.match(expression)
        if m:
            qualifier = _unquote(m.group(1))
            table = aliases.get(qualifier.lower(), qualifier)
        out.append(DesignField(expression=expression, table=table, alias=alias))
    return out


def extract_order_by(sql: str) -> list[OrderItem]:
    text = _clause(sql, "ORDER BY", _ORDER_END_KEYWORDS)
    if not text:
        return []
    items = []
    for part in split_top_level(text, ","):
        expr = _NULLS_ORDER_RE.sub("", part.strip())
        direction = "ASC"
        m = _ORDER_DIRECTION_RE.search(expr)
        if m:
            direction = m.group(1).upper()
            expr = expr[:m.start()].strip()
        if expr:
            items.append(OrderItem(expr, direction))
    return items


def _match_order_item(item: OrderItem, fields: list[DesignField]) -> Optional[DesignField]:
    target = item.expression.lower()
    bare = target.replace('"', "")
    for f in fields:
        if f.alias and (f.alias.lower() == target or f.alias.lower() == bare):
            return f
        if f.expression.lower() == target:
            return f
        dot = f.expression.rfind(".")
        if dot >= 0 and f.expression[dot + 1:].strip().replace('"', "").lower() == bare:
            return f
    return None


def parse_query_design(sql: Optional[str]) -> QueryDesignModel:
    """Structure of a single SELECT statement; parseable=False (original text kept) when unsupported."""
    if not sql or not isinstance(sql, str):
        return QueryDesignModel(parseable=False, sql=sql or "")
    text = sql.strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    if re.match(r"\s*WITH\b", text, re.IGNORECASE):
        return QueryDesignModel(parseable=False, sql=sql)
    if not re.match(r"\s*SELECT\b", text, re.IGNORECASE):
        return QueryDesignModel(parseable=False, sql=sql)
    try:
        if has_top_level_set_operation(text) or len(split_top_level(text, ";")) > 1:
            return QueryDesignModel(parseable=False, sql=sql)
        head = _SELECT_HEAD_RE.match(text)
        from_idx = find_top_level_keyword(text, "FROM", head.end())
        select_clause = text[head.end():from_idx if from_idx is not None else len(text)].strip()
        from_clause = _clause(text, "FROM", _FROM_END_KEYWORDS, head.end()) if from_idx is not None else ""

        tables, joins = extract_tables_and_joins(from_clause or "")
        fields = extract_fields(select_clause, tables)
        group_text = _clause(text, "GROUP BY", _GROUP_END_KEYWORDS)
        group_by = [g.strip() for g in split_top_level(group_text, ",") if g.strip()] if group_text else []
        order_by = extract_order_by(text)
        for item in order_by:
            matched = _match_order_item(item, fields)
            if matched is not None:
                matched.sort_direction = item.direction

        return QueryDesignModel(
            parseable=True,
            sql=sql,
            distinct=bool(head.group(1) and head.group(1).strip().upper().startswith("DISTINCT")),
            tables=tables,
            joins=joins,
            fields=fields,
            where_text=_clause(text, "WHERE", _WHERE_END_KEYWORDS) or None,
            group_by=group_by or None,
            having_text=_clause(text, "HAVING", _HAVING_END_KEYWORDS) or None,
            order_by=order_by or None,
        )
    except Exception as e:
        log.debug("[DESIGN] parse failed: %s", e)
        return QueryDesignModel(parseable=False, sql=sql)


def parse_view_definition(ddl: Optional[str]) -> QueryDesignModel:
    """parse_query_design for a CREATE [OR REPLACE] VIEW statement (or a bare SELECT)."""
    if not ddl or not isinstance(ddl, str):
        return QueryDesignModel(parseable=False, sql=ddl or "")
    m = _CREATE_VIEW_RE.match(ddl)
    if not m:
        return parse_query_design(ddl)
    model = parse_query_design(ddl[m.end():])
    model.sql = ddl
    return model
