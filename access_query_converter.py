#!/usr/bin/env python3
"""
Access saved queries -> PostgreSQL DDL (views, table functions, row-count functions).

Run: python access_query_converter.py <queries.json> [options]

- Reads a JSON list of query descriptors:
    [{"name": "qryOrders", "type_code": 0, "sql": "SELECT ...", "parameters": [{"name": "x", "type": "Long"}]}]
- For each query: strips the PARAMETERS clause, resolves TempVars and declared parameters,
  compiles domain functions (DLookUp, DSum, ...) into subqueries, applies the function
  catalog and the Access syntax rewrites, schema-qualifies tables and user functions,
  types the parameters and wraps the body in the DDL object matching its query type.
- Writes one <name>.sql per query to --output-dir (warnings as leading -- WARNING: lines).
- Optionally validates the converted bodies with sqlglot (--validate) and executes the
  DDL on PostgreSQL (--execute), creating stub functions for VBA code referenced by the
  queries first (--vba-dir).

PostgreSQL connection defaults below; override with env (PG_HOST, ...) or CLI flags.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from access_domain_functions import compile_domain_functions, restore_placeholders
from access_query_ddl import OBJECT_NONE, synthesize_ddl
from access_query_params import (
    DeclaredParameter,
    ResolvedParameter,
    extract_session_variables,
    resolve_parameters,
    strip_parameters_clause,
    substitute_declared_parameters,
)
from access_schema_qualifier import qualify
from access_sql_rewrite import add_warning, apply_catalog, apply_syntax, looks_like_access
from access_sql_scanner import render_schema, sanitize_name
from vba_stub_generator import create_stub_functions, ensure_stubs_for_sql, parse_vba_declarations

log = logging.getLogger("access_to_pg.converter")

# -----------------------------------------------------------------------------
# PostgreSQL connection (override with env or CLI)
# -----------------------------------------------------------------------------
PG_HOST: str = "localhost"
PG_PORT: int = 5432
PG_DATABASE: str = "postgres"
PG_USER: str = "postgres"
PG_PASSWORD: str = ""

DEFAULT_SCHEMA = "public"
VBA_MODULE_PATTERNS = ("*.bas", "*.cls", "*.txt")


@dataclass(frozen=True)
class QueryDescriptor:
    name: str
    classification_code: int
    raw_sql: str
    declared_parameters: tuple[DeclaredParameter, ...] = ()


@dataclass
class TranslationResult:
    statements: list[str]
    object_name: str
    object_kind: str
    warnings: list[str] = field(default_factory=list)
    extracted_helper_functions: list[str] = field(default_factory=list)
    parameters: list[ResolvedParameter] = field(default_factory=list)
    sql: str = ""


def _phase(name: str, fn, sql: str, warnings: list) -> str:
    """Run one pipeline phase; a failure is recorded as a warning and the input passes through."""
    log.debug("[CONVERT] %s starting (sql len=%d)", name, len(sql))
    t0 = time.perf_counter()
    try:
        out = fn(sql)
    except Exception as e:
        add_warning(warnings, f"{name} failed: {e}")
        log.debug("Traceback:\n%s", traceback.format_exc())
        return sql
    log.debug("[CONVERT] %s done in %.3fs", name, time.perf_counter() - t0)
    return out


def validate_sql(sql: str, warnings: Optional[list] = None) -> bool:
    """Parse *sql* with sqlglot (postgres dialect). A parse failure becomes a warning."""
    import sqlglot
    from sqlglot.errors import ParseError, TokenError

    try:
        sqlglot.parse_one(sql, read="postgres")
        return True
    except (ParseError, TokenError) as e:
        add_warning(warnings, f"sqlglot could not parse converted SQL: {str(e).splitlines()[0] if str(e) else e}")
        return False


def convert_access_query(
    descriptor: QueryDescriptor,
    schema: str,
    column_types: Optional[dict] = None,
    *,
    order_keys: Optional[dict] = None,
    validate: bool = False,
) -> TranslationResult:
    """
    Convert one saved query to PostgreSQL DDL. Problems with individual rewrites become
    warnings; only an empty query or schema raises ValueError.
    """
    if not descriptor.raw_sql or not descriptor.raw_sql.strip():
        raise ValueError(f"query {descriptor.name!r} has no SQL")
    if not schema or not schema.strip():
        raise ValueError("schema name is required")
    schema = schema.strip()
    name = sanitize_name(descriptor.name) or "query"
    warnings: list[str] = []
    log.debug("[CONVERT] %s: type=%s", descriptor.name, descriptor.classification_code)

    sql, clause_params = strip_parameters_clause(descriptor.raw_sql)
    declared = list(descriptor.declared_parameters) + [
        p for p in clause_params
        if p.name.lower() not in {d.name.lower() for d in descriptor.declared_parameters}
    ]
    legacy = looks_like_access(sql)

    sql, session_params = extract_session_variables(sql)
    sql = _phase("declared_parameters",
                 lambda s: substitute_declared_parameters(s, declared, column_types), sql, warnings)

    placeholders: dict = {}
    compiled = compile_domain_functions(sql, schema, order_keys, warnings, placeholders)
    sql = compiled.sql

    sql = _phase("catalog", lambda s: apply_catalog(s, warnings, legacy=legacy), sql, warnings)
    sql = _phase("syntax", lambda s: apply_syntax(s, warnings, legacy=legacy), sql, warnings)
    sql = _phase("qualify", lambda s: qualify(s, schema), sql, warnings)
    sql = restore_placeholders(sql, placeholders)

    discovered = list(session_params) + [ResolvedParameter(ref, "") for ref in compiled.param_refs]
    params = resolve_parameters(declared, discovered, column_types, sql, compiled.tables)

    if validate:
        validate_sql(sql, warnings)

    plan = synthesize_ddl(descriptor.classification_code, sql, schema, name, params,
                          column_types, original_sql=descriptor.raw_sql, warnings=warnings)
    return TranslationResult(
        statements=plan.statements,
        object_name=f'{render_schema(schema)}."{name}"',
        object_kind=plan.object_kind,
        warnings=warnings,
        extracted_helper_functions=plan.helper_functions,
        parameters=params,
        sql=sql,
    )


def convert_access_expression(expression: str, warnings: Optional[list] = None) -> str:
    """Catalog and syntax rewrites for a standalone expression (no qualification, no DDL)."""
    if not expression:
        return expression
    if warnings is None:
        warnings = []
    sql = apply_catalog(expression, warnings)
    return apply_syntax(sql, warnings)


# ---------------------------------------------------------------------------
# Input files
# ---------------------------------------------------------------------------

def load_query_descriptors(path: str) -> list[QueryDescriptor]:
    """Query descriptors from a JSON list (name, type_code, sql, parameters)."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("queries", [])
    out: list[QueryDescriptor] = []
    for item in data:
        declared = tuple(DeclaredParameter(p.get("name", ""), p.get("type"))
                         for p in item.get("parameters") or [])
        out.append(QueryDescriptor(
            name=item.get("name", ""),
            classification_code=int(item.get("type_code", 0) or 0),
            raw_sql=item.get("sql", ""),
            declared_parameters=declared,
        ))
    return out


def load_column_types(path: Optional[str]) -> dict:
    if not path:
        return {}
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return {str(k).lower(): str(v) for k, v in data.items()}


def render_output(result: TranslationResult) -> str:
    lines = [f"-- WARNING: {w}" for w in result.warnings]
    body = ";\n\n".join(s.rstrip().rstrip(";") for s in result.statements)
    if body and not result.statements[-1].lstrip().startswith("--"):
        body += ";"
    lines.append(body)
    return "\n".join(lines) + "\n"


def _output_file_name(descriptor: QueryDescriptor) -> str:
    return (sanitize_name(descriptor.name) or "query") + ".sql"


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _connect(host: str, port: int, database: str, user: str, password: str):
    """Return a psycopg2 connection (autocommit off; each query is its own transaction)."""
    import psycopg2
    log.debug("Opening connection to %s:%d/%s as user=%s", host, port, database, user)
    t0 = time.time()
    conn = psycopg2.connect(host=host, port=port, database=database, user=user, password=password)
    log.debug("Connection established in %.3fs", time.time() - t0)
    return conn


def ensure_pg_schema(connection, schema: str) -> bool:
    """Create schema in PostgreSQL if it does not exist. Returns True on success."""
    import psycopg2
    from psycopg2 import sql

    try:
        with connection.cursor() as cur:
            cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema)))
        connection.commit()
        return True
    except psycopg2.Error as e:
        log.error("[PG] could not create schema %s: %s", schema, e)
        connection.rollback()
        return False


def execute_statements(connection, statements: list[str], display: str) -> tuple[bool, str]:
    """Execute one query's statements in a single transaction. Returns (success, error_message)."""
    import psycopg2

    runnable = [s for s in statements if s.strip() and not s.lstrip().startswith("--")]
    if not runnable:
        return True, ""
    t0 = time.monotonic()
    try:
        with connection.cursor() as cur:
            for stmt in runnable:
                cur.execute(stmt)
        connection.commit()
        log.debug("[PG-EXEC] %s: OK in %.2fs", display, time.monotonic() - t0)
        return True, ""
    except psycopg2.Error as e:
        err_msg = str(e).strip()
        log.debug("[PG-EXEC] %s: FAILED in %.2fs -- %s", display, time.monotonic() - t0, err_msg[:200])
        connection.rollback()
        return False, err_msg


def read_vba_sources(vba_dir: str) -> list[str]:
    path = Path(vba_dir)
    sources = []
    for pattern in VBA_MODULE_PATTERNS:
        for p in sorted(path.glob(pattern)):
            sources.append(p.read_text(encoding="utf-8", errors="replace"))
    return sources


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Convert Access saved queries to PostgreSQL views and functions.",
    )
    parser.add_argument("queries_file", help="JSON file with a list of query descriptors")
    parser.add_argument("--schema", default=DEFAULT_SCHEMA, help=f"Target schema (default: {DEFAULT_SCHEMA})")
    parser.add_argument(
        "--column-types", default=None, metavar="FILE",
        help="Optional JSON map of column -> PostgreSQL type (keys: column or table.column)",
    )
    parser.add_argument(
        "--output-dir", default="converted_queries",
        help="Folder for the generated .sql files (default: converted_queries)",
    )
    parser.add_argument(
        "--validate", action="store_true",
        help="Parse each converted query body with sqlglot; parse failures are reported as warnings",
    )
    parser.add_argument(
        "--execute", action="store_true",
        help="Execute the generated DDL on PostgreSQL (one transaction per query)",
    )
    parser.add_argument(
        "--ensure-schema", action="store_true",
        help="CREATE SCHEMA IF NOT EXISTS before executing (with --execute)",
    )
    parser.add_argument(
        "--vba-dir", default=None, metavar="DIR",
        help="Folder of exported VBA modules (*.bas, *.cls, *.txt); stub functions are created "
             "for their declarations and for user functions the queries call (with --execute)",
    )
    parser.add_argument("--pg-host", default=None, help="PostgreSQL host (or PG_HOST env)")
    parser.add_argument("--pg-port", type=int, default=None, help="PostgreSQL port (or PG_PORT env)")
    parser.add_argument("--pg-database", default=None, help="PostgreSQL database (or PG_DATABASE env)")
    parser.add_argument("--pg-user", default=None, help="PostgreSQL user (or PG_USER env)")
    parser.add_argument("--pg-password", default=None, help="PostgreSQL password (or PG_PASSWORD env)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging level (default: INFO). Use DEBUG for per-phase detail.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="PATH",
        help="Optional file to write logs to (in addition to stderr).",
    )
    args = parser.parse_args()

    root_log = logging.getLogger("access_to_pg")
    root_log.setLevel(getattr(logging, args.log_level.upper(), logging.INFO))
    if not root_log.handlers:
        fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(fmt)
        root_log.addHandler(handler)
    if args.log_file:
        fh = logging.FileHandler(args.log_file, encoding="utf-8")
        fh.setFormatter(root_log.handlers[0].formatter)
        root_log.addHandler(fh)

    pg_host = args.pg_host or os.environ.get("PG_HOST", PG_HOST)
    pg_port = args.pg_port if args.pg_port is not None else int(os.environ.get("PG_PORT", PG_PORT))
    pg_database = args.pg_database or os.environ.get("PG_DATABASE", PG_DATABASE)
    pg_user = args.pg_user or os.environ.get("PG_USER", PG_USER)
    pg_password = args.pg_password or os.environ.get("PG_PASSWORD", PG_PASSWORD)

    if not os.path.isfile(args.queries_file):
        log.error("Input file not found: %s", args.queries_file)
        sys.exit(1)
    try:
        descriptors = load_query_descriptors(args.queries_file)
        column_types = load_column_types(args.column_types)
    except (OSError, ValueError) as e:
        log.error("Could not read input: %s", e)
        sys.exit(1)
    log.info("Loaded %d queries (%d column types), schema=%s",
             len(descriptors), len(column_types), args.schema)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    pg_conn = None
    if args.execute:
        log.info("[PG] Connecting to PostgreSQL (%s:%s/%s)...", pg_host, pg_port, pg_database)
        try:
            pg_conn = _connect(pg_host, pg_port, pg_database, pg_user, pg_password)
        except Exception as e:
            log.error("[PG] Connection failed: %s", e)
            sys.exit(1)
        if args.ensure_schema and not ensure_pg_schema(pg_conn, args.schema):
            sys.exit(1)

    if pg_conn is not None and args.vba_dir:
        declarations = []
        for source in read_vba_sources(args.vba_dir):
            declarations.extend(parse_vba_declarations(source))
        report = create_stub_functions(pg_conn, args.schema, declarations)
        log.info("[STUBS] VBA declarations: %d created, %d skipped, %d warnings",
                 len(report.created), len(report.skipped), len(report.warnings))

    n_ok = 0
    n_fail = 0
    for i, descriptor in enumerate(descriptors, 1):
        display = descriptor.name or f"#{i}"
        try:
            result = convert_access_query(descriptor, args.schema, column_types, validate=args.validate)
        except ValueError as e:
            log.error("[%d/%d] %s: %s", i, len(descriptors), display, e)
            n_fail += 1
            continue
        out_path = output_dir / _output_file_name(descriptor)
        out_path.write_text(render_output(result), encoding="utf-8")
        log.info("[%d/%d] %s -> %s (%s, %d warnings)", i, len(descriptors), display,
                 result.object_name, result.object_kind, len(result.warnings))

        if pg_conn is not None and result.object_kind != OBJECT_NONE:
            if args.vba_dir:
                ensure_stubs_for_sql(pg_conn, args.schema, result.statements)
            ok, err = execute_statements(pg_conn, result.statements, display)
            if not ok:
                log.error("[PG-EXEC] %s: %s", display, err)
                n_fail += 1
                continue
        n_ok += 1

    if pg_conn is not None:
        pg_conn.close()
    log.info("Done: %d succeeded, %d failed (output in %s)", n_ok, n_fail, output_dir)
    sys.exit(0 if n_fail == 0 else 1)


if __name__ == "__main__":
    main()
