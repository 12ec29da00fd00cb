"""
Tests for the query pipeline: parameters (access_query_params.py), DDL synthesis
(access_query_ddl.py) and the end-to-end converter (access_query_converter.py).
Run with:  python -m pytest test_query_converter.py -v
"""

import json
import sys

import psycopg2
import pytest

import access_query_converter as mod
import access_query_ddl as ddl
import access_query_params as params
from access_query_params import DeclaredParameter, ResolvedParameter


def _ws(s: str) -> str:
    """Collapse whitespace so assertions are not sensitive to extra spaces."""
    return " ".join(s.split()).strip()


def _convert(sql, code=0, schema="public", declared=(), name="qryTest", **kwargs):
    descriptor = mod.QueryDescriptor(name, code, sql, tuple(declared))
    return mod.convert_access_query(descriptor, schema, **kwargs)


# ===========================================================================
# 1. PARAMETERS clause / session variables
# ===========================================================================
class TestStripParametersClause:
    def test_clause_removed(self):
        sql, declared = params.strip_parameters_clause(
            "PARAMETERS [Start Date] DateTime, Region Text(50); SELECT * FROM t;")
        assert sql == "SELECT * FROM t"
        assert declared == [DeclaredParameter("Start Date", "DateTime"), DeclaredParameter("Region", "Text(50)")]

    def test_no_clause(self):
        assert params.strip_parameters_clause("SELECT 1;") == ("SELECT 1", [])

    def test_semicolon_inside_brackets(self):
        sql, declared = params.strip_parameters_clause("PARAMETERS [a;b] Long; SELECT 1")
        assert sql == "SELECT 1"
        assert declared[0].name == "a;b"


class TestSessionVariables:
    @pytest.mark.parametrize("ref", [
        "[TempVars]![CurrentUser]",
        "TempVars![CurrentUser]",
        'TempVars("CurrentUser")',
        "TempVars!CurrentUser",
    ])
    def test_forms(self, ref):
        sql, found = params.extract_session_variables(f"SELECT * FROM t WHERE u = {ref}")
        assert sql == "SELECT * FROM t WHERE u = p_currentuser"
        assert [(p.source_name, p.target_name) for p in found] == [("CurrentUser", "p_currentuser")]

    def test_inside_string_untouched(self):
        sql = "SELECT 'TempVars!x' FROM t"
        assert params.extract_session_variables(sql) == (sql, [])

    def test_reference_classification(self):
        assert params.session_variable_name("[TempVars]![X]") == "X"
        assert params.is_form_ref("Forms!frmMain!txtID")
        assert params.is_dotted_ref("Orders.OrderID")
        assert not params.is_dotted_ref("Start Date")


# ===========================================================================
# 2. Declared parameter substitution and typing
# ===========================================================================
class TestDeclaredParameters:
    def test_bracketed_reference(self):
        out = params.substitute_declared_parameters(
            "SELECT * FROM t WHERE [ID] = [Enter ID]", [DeclaredParameter("Enter ID", "Long")])
        assert out == "SELECT * FROM t WHERE [ID] = p_enter_id"

    def test_known_column_wins(self):
        sql = "SELECT * FROM t WHERE [Region] = 'x'"
        out = params.substitute_declared_parameters(
            sql, [DeclaredParameter("Region", "Text")], {"t.region": "text"})
        assert out == sql

    def test_bare_word_needs_column_types(self):
        sql = "SELECT * FROM t WHERE [Price] > Cutoff"
        declared = [DeclaredParameter("Cutoff", "Currency")]
        assert params.substitute_declared_parameters(sql, declared) == sql
        assert params.substitute_declared_parameters(sql, declared, {"t.price": "numeric"}) == \
            "SELECT * FROM t WHERE [Price] > p_cutoff"

    def test_form_and_dotted_declarations_ignored(self):
        declared = [DeclaredParameter("Forms!f!x", "Long"), DeclaredParameter("Orders.ID", "Long"),
                    DeclaredParameter("Real One", "Long")]
        assert [d.name for d in params.real_declared_parameters(declared)] == ["Real One"]


class TestParameterTypes:
    TYPES = {"orders.orderid": "integer", "customers.name": "text", "price": "numeric"}

    def test_lookup_qualified(self):
        assert params.lookup_column_type('orders."orderid"', self.TYPES) == "integer"

    def test_lookup_unique_tail(self):
        assert params.lookup_column_type('"orderid"', self.TYPES) == "integer"

    def test_lookup_table_hint(self):
        types = {"a.id": "integer", "b.id": "bigint"}
        assert params.lookup_column_type('"id"', types) is None
        assert params.lookup_column_type('"id"', types, table_hint="b") == "bigint"

    def test_infer_left_and_right(self):
        assert params.infer_parameter_type("p_x", '"price" > p_x', self.TYPES) == "numeric"
        assert params.infer_parameter_type("p_x", 'p_x <= "price"', self.TYPES) == "numeric"

    def test_infer_between(self):
        sql = '"price" BETWEEN p_lo AND p_hi'
        assert params.infer_parameter_type("p_lo", sql, self.TYPES) == "numeric"
        assert params.infer_parameter_type("p_hi", sql, self.TYPES) == "numeric"

    def test_infer_none_without_types(self):
        assert params.infer_parameter_type("p_x", '"price" > p_x', None) is None

    def test_resolve_order_and_dedup(self):
        resolved = params.resolve_parameters(
            [DeclaredParameter("Start", "DateTime"), DeclaredParameter("TempVars!User", "Long")],
            [ResolvedParameter("User", "p_user"), ResolvedParameter("Start", ""), ResolvedParameter("Qty", "")],
            {"qty": "integer"},
            '"qty" = p_qty',
        )
        assert [p.declaration() for p in resolved] == ["p_start timestamp", "p_user bigint", "p_qty integer"]

    def test_untyped_declaration_falls_back_to_inference(self):
        resolved = params.resolve_parameters([DeclaredParameter("X", "Variant")], [], {"price": "numeric"},
                                             '"price" = p_x')
        assert resolved[0].target_type == "numeric"


# ===========================================================================
# 3. DDL synthesis
# ===========================================================================
class TestClassifyQuery:
    @pytest.mark.parametrize("code,sql,has_params,shape", [
        (0, "SELECT a FROM t", False, ddl.SHAPE_VIEW),
        (0, "SELECT a FROM t WHERE a = p_x", True, ddl.SHAPE_TABLE_FUNCTION),
        (0, "SELECT * INTO x FROM t", False, ddl.SHAPE_MAKE_TABLE),
        (80, "SELECT * FROM t", False, ddl.SHAPE_MAKE_TABLE),
        (16, "SELECT a FROM t", False, ddl.SHAPE_CROSSTAB),
        (0, "TRANSFORM Sum(a) SELECT b FROM t PIVOT c", False, ddl.SHAPE_CROSSTAB),
        (48, "UPDATE t SET a = 1", False, ddl.SHAPE_ACTION),
        (0, "DELETE FROM t", False, ddl.SHAPE_ACTION),
        (64, "INSERT INTO t SELECT * FROM u", False, ddl.SHAPE_ACTION),
        (128, "SELECT a FROM t UNION SELECT a FROM u", False, ddl.SHAPE_VIEW),
        (96, "ALTER TABLE t ADD c int", False, ddl.SHAPE_UNSUPPORTED),
    ])
    def test_shapes(self, code, sql, has_params, shape):
        assert ddl.classify_query(code, sql, has_params) == shape

    def test_into_inside_subquery_is_not_make_table(self):
        sql = "SELECT a FROM t WHERE a IN (SELECT b INTO x FROM u)"
        assert ddl.classify_query(0, sql, False) == ddl.SHAPE_VIEW


class TestReturnColumns:
    def test_typed(self):
        cols = ddl.extract_return_columns('SELECT o."orderid", "total" AS t FROM x', {"orders.orderid": "integer"})
        assert cols == ['"orderid" integer', '"t" text']

    def test_expression_without_alias(self):
        assert ddl.extract_return_columns('SELECT "a" + 1 FROM x') is None

    def test_star(self):
        assert ddl.extract_return_columns("SELECT * FROM x") is None

    def test_setof_record_fallback_warns(self):
        warnings = []
        out = ddl.build_table_function("SELECT * FROM x WHERE a = p_a", "public", "q",
                                       [ResolvedParameter("a", "p_a", "integer")], warnings=warnings)
        assert "RETURNS SETOF record" in out
        assert any("SETOF record" in w for w in warnings)


class TestSynthesizeDdl:
    def test_view(self):
        plan = ddl.synthesize_ddl(0, "SELECT 1", "public", "v", [])
        assert plan.object_kind == ddl.OBJECT_VIEW
        assert plan.statements == ['CREATE OR REPLACE VIEW public."v" AS\nSELECT 1']

    def test_unsupported_is_commented(self):
        warnings = []
        plan = ddl.synthesize_ddl(96, "ALTER TABLE t ADD c int", "public", "q", [], warnings=warnings)
        assert plan.object_kind == ddl.OBJECT_NONE
        assert all(line.startswith("--") for line in plan.statements[0].splitlines())
        assert warnings

    def test_custom_aggregates_first(self):
        plan = ddl.synthesize_ddl(0, "SELECT first_agg(a) FROM t", "public", "v", [])
        assert len(plan.statements) == 3
        assert "first_agg_sfunc" in plan.statements[0]
        assert "last_agg_sfunc" in plan.statements[1]
        assert plan.helper_functions == ["public.first_agg", "public.last_agg"]

    def test_make_table_without_target(self):
        warnings = []
        plan = ddl.synthesize_ddl(80, "SELECT * FROM t", "public", "q", [], warnings=warnings)
        assert plan.object_kind == ddl.OBJECT_NONE
        assert any("INTO" in w for w in warnings)


# ===========================================================================
# 4. End-to-end conversion
# ===========================================================================
class TestConvertAccessQuery:
    def test_domain_lookup_table_function(self):
        result = _convert(
            'SELECT [OrderID], DLookUp("Total","Orders","[OrderID]=" & [OrderID]) AS Total FROM Orders',
            schema="myschema", name="qryOrderTotals", column_types={"orders.orderid": "integer"},
        )
        assert result.object_kind == "function"
        assert result.object_name == 'myschema."qryordertotals"'
        assert [p.declaration() for p in result.parameters] == ["p_orderid integer"]
        assert result.sql == ('SELECT "orderid", (SELECT "total" FROM myschema."orders" '
                              'WHERE "orderid" = p_orderid LIMIT 1) AS Total FROM myschema."orders" orders')
        stmt = result.statements[-1]
        assert stmt.startswith('CREATE OR REPLACE FUNCTION myschema."qryordertotals"(p_orderid integer)\n')
        assert 'RETURNS TABLE("orderid" integer, "total" text)' in stmt
        assert stmt.endswith("$$ LANGUAGE SQL STABLE")

    def test_domain_parameter_untyped_defaults_to_text(self):
        result = _convert('SELECT DLookUp("Total","Orders","[OrderID]=" & [OrderID]) AS T FROM X')
        assert [p.declaration() for p in result.parameters] == ["p_orderid text"]

    def test_view(self):
        result = _convert("SELECT [CompanyName] FROM Customers WHERE [Active] = True", name="qryCustomers")
        assert result.object_kind == "view"
        assert result.statements == [
            'CREATE OR REPLACE VIEW public."qrycustomers" AS\n'
            'SELECT "companyname" FROM public."customers" customers WHERE "active" = true'
        ]
        assert result.warnings == []

    def test_single_quoted_like_pattern(self):
        result = _convert("SELECT Name FROM Customers WHERE Name Like 'A*'")
        assert result.sql == "SELECT Name FROM public.\"customers\" customers WHERE Name Like 'A%'"

    def test_upper_case_mod(self):
        result = _convert("SELECT Qty MOD 2 AS Odd FROM Items")
        assert result.sql == 'SELECT Qty % 2 AS Odd FROM public."items" items'

    def test_top_becomes_limit(self):
        result = _convert("SELECT TOP 5 [Name] FROM Customers ORDER BY [Name]")
        assert "TOP" not in result.sql.upper().split()
        assert result.sql.endswith("LIMIT 5")

    def test_make_table(self):
        result = _convert("SELECT * INTO Archive FROM Orders", code=80, name="mkArchive")
        assert result.object_kind == "procedure"
        assert result.statements == [
            'CREATE OR REPLACE FUNCTION public."mkarchive"()\n'
            "RETURNS integer AS $$\n"
            "DECLARE _count integer;\n"
            "BEGIN\n"
            '  DROP TABLE IF EXISTS public."archive";\n'
            '  CREATE TABLE public."archive" AS\n'
            '  SELECT * FROM public."orders" orders;\n'
            "  GET DIAGNOSTICS _count = ROW_COUNT;\n"
            "  RETURN _count;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql VOLATILE"
        ]

    def test_update_with_declared_parameter(self):
        result = _convert("UPDATE Orders SET [Freight] = 0 WHERE [OrderID] = [Enter ID]", code=48,
                          declared=[DeclaredParameter("Enter ID", "Long")], name="qryUpdate")
        assert result.object_kind == "procedure"
        stmt = result.statements[0]
        assert stmt.startswith('CREATE OR REPLACE FUNCTION public."qryupdate"(p_enter_id bigint)\n')
        assert '  UPDATE public."orders" orders SET "freight" = 0 WHERE "orderid" = p_enter_id;\n' in stmt
        assert "GET DIAGNOSTICS _count = ROW_COUNT" in stmt

    def test_parameters_clause(self):
        result = _convert(
            "PARAMETERS [Start Date] DateTime, [End Date] DateTime;\n"
            "SELECT [OrderID] FROM Orders WHERE [OrderDate] BETWEEN [Start Date] AND [End Date];"
        )
        assert result.sql == ('SELECT "orderid" FROM public."orders" orders '
                              'WHERE "orderdate" BETWEEN p_start_date AND p_end_date')
        assert [p.declaration() for p in result.parameters] == \
            ["p_start_date timestamp", "p_end_date timestamp"]
        assert result.object_kind == "function"

    def test_session_variable_typed_by_declaration(self):
        result = _convert("SELECT [OrderID] FROM Orders WHERE [UserID] = [TempVars]![CurrentUser]",
                          declared=[DeclaredParameter("TempVars!CurrentUser", "Long")])
        assert result.sql.endswith('WHERE "userid" = p_currentuser')
        assert [p.declaration() for p in result.parameters] == ["p_currentuser bigint"]

    def test_bare_declared_parameter_with_column_types(self):
        result = _convert("SELECT [Name] FROM Products WHERE [Price] > Cutoff",
                          declared=[DeclaredParameter("Cutoff", "Currency")],
                          column_types={"products.price": "numeric"})
        assert result.sql == 'SELECT "name" FROM public."products" products WHERE "price" > p_cutoff'
        assert [p.declaration() for p in result.parameters] == ["p_cutoff numeric(19,4)"]

    def test_crosstab_passthrough(self):
        raw = "TRANSFORM Sum([Qty]) AS Total SELECT [Product] FROM Sales GROUP BY [Product] PIVOT [Region]"
        result = _convert(raw, code=16, name="qryCrosstab")
        assert result.object_kind == "none"
        lines = result.statements[0].splitlines()
        assert all(line.startswith("--") for line in lines)
        assert lines[-1] == "-- " + raw
        assert any("Crosstab" in w for w in result.warnings)

    def test_union_view(self):
        result = _convert("SELECT [A] FROM T1 UNION SELECT [A] FROM T2", code=128)
        assert result.object_kind == "view"
        assert result.sql == 'SELECT "a" FROM public."t1" t1 UNION SELECT "a" FROM public."t2" t2'

    def test_first_aggregate_helpers(self):
        result = _convert("SELECT First([Name]) AS FirstName FROM Customers GROUP BY [Region]")
        assert result.extracted_helper_functions == ["public.first_agg", "public.last_agg"]
        assert len(result.statements) == 3
        assert 'first_agg("name") AS FirstName' in result.statements[-1]

    def test_user_function_qualified(self):
        result = _convert("SELECT GetRate([Region]) AS Rate FROM Regions")
        assert result.sql == 'SELECT "public"."getrate"("region") AS Rate FROM public."regions" regions'

    def test_already_converted_is_fixed_point(self):
        once = _convert("SELECT TOP 5 [Name], Nz([City], \"n/a\") AS City FROM Customers WHERE [Name] LIKE \"A*\"")
        again = _convert(once.sql)
        assert again.sql == once.sql
        assert again.warnings == []

    def test_warnings_are_unique(self):
        result = _convert("SELECT Mid([x]), Mid([x]) FROM t")
        assert len(result.warnings) == len(set(result.warnings))

    def test_empty_sql_rejected(self):
        with pytest.raises(ValueError):
            _convert("   ")

    def test_blank_schema_rejected(self):
        with pytest.raises(ValueError):
            _convert("SELECT 1", schema=" ")

    def test_validate_clean(self):
        result = _convert("SELECT [CompanyName] FROM Customers", validate=True)
        assert result.warnings == []

    def test_validate_sql_reports_parse_error(self):
        warnings = []
        assert mod.validate_sql("SELECT * FROM t WHERE (a = 1", warnings) is False
        assert any("sqlglot" in w for w in warnings)


class TestConvertAccessExpression:
    def test_expression(self):
        assert mod.convert_access_expression('IIf([a] > 0, "pos", "neg")') == \
            "CASE WHEN \"a\" > 0 THEN 'pos' ELSE 'neg' END"

    def test_empty(self):
        assert mod.convert_access_expression("") == ""


# ===========================================================================
# 5. Files and output
# ===========================================================================
class TestFiles:
    def test_load_descriptors_list(self, tmp_path):
        path = tmp_path / "q.json"
        path.write_text(json.dumps([
            {"name": "q1", "type_code": 48, "sql": "UPDATE t SET a = 1",
             "parameters": [{"name": "x", "type": "Long"}]},
        ]), encoding="utf-8")
        (d,) = mod.load_query_descriptors(str(path))
        assert d == mod.QueryDescriptor("q1", 48, "UPDATE t SET a = 1", (DeclaredParameter("x", "Long"),))

    def test_load_descriptors_wrapped(self, tmp_path):
        path = tmp_path / "q.json"
        path.write_text(json.dumps({"queries": [{"name": "q1", "sql": "SELECT 1"}]}), encoding="utf-8")
        (d,) = mod.load_query_descriptors(str(path))
        assert d.classification_code == 0
        assert d.declared_parameters == ()

    def test_load_column_types(self, tmp_path):
        path = tmp_path / "types.json"
        path.write_text(json.dumps({"Orders.OrderID": "integer"}), encoding="utf-8")
        assert mod.load_column_types(str(path)) == {"orders.orderid": "integer"}
        assert mod.load_column_types(None) == {}

    def test_render_output(self):
        result = mod.TranslationResult(["CREATE VIEW a AS SELECT 1"], "public.\"a\"", "view", ["careful"])
        assert mod.render_output(result) == "-- WARNING: careful\nCREATE VIEW a AS SELECT 1;\n"

    def test_render_commented(self):
        result = mod.TranslationResult(["-- not converted\n-- X"], "public.\"a\"", "none")
        assert mod.render_output(result) == "-- not converted\n-- X\n"

    def test_output_file_name(self):
        assert mod._output_file_name(mod.QueryDescriptor("Order Summary", 0, "x")) == "order_summary.sql"


class TestMain:
    def test_writes_files(self, tmp_path, monkeypatch):
        queries = tmp_path / "queries.json"
        queries.write_text(json.dumps([
            {"name": "qryCustomers", "type_code": 0, "sql": "SELECT [CompanyName] FROM Customers"},
        ]), encoding="utf-8")
        out_dir = tmp_path / "out"
        monkeypatch.setattr(sys, "argv", ["access_query_converter.py", str(queries), "--output-dir", str(out_dir)])
        with pytest.raises(SystemExit) as exc:
            mod.main()
        assert exc.value.code == 0
        text = (out_dir / "qrycustomers.sql").read_text(encoding="utf-8")
        assert _ws(text) == _ws('CREATE OR REPLACE VIEW public."qrycustomers" AS '
                                'SELECT "companyname" FROM public."customers" customers;')

    def test_failed_query_sets_exit_code(self, tmp_path, monkeypatch):
        queries = tmp_path / "queries.json"
        queries.write_text(json.dumps([{"name": "empty", "sql": ""}]), encoding="utf-8")
        monkeypatch.setattr(sys, "argv", ["access_query_converter.py", str(queries),
                                          "--output-dir", str(tmp_path / "out")])
        with pytest.raises(SystemExit) as exc:
            mod.main()
        assert exc.value.code == 1

    def test_missing_input(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["access_query_converter.py", str(tmp_path / "nope.json")])
        with pytest.raises(SystemExit) as exc:
            mod.main()
        assert exc.value.code == 1


# ===========================================================================
# 6. Executing statements
# ===========================================================================
class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, stmt, args=None):
        if self.conn.fail_on and self.conn.fail_on in str(stmt):
            raise psycopg2.ProgrammingError("boom")
        self.conn.executed.append(str(stmt))


class FakeConnection:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.executed = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class TestExecuteStatements:
    def test_comments_skipped(self):
        conn = FakeConnection()
        assert mod.execute_statements(conn, ["-- note", "CREATE VIEW v AS SELECT 1"], "v") == (True, "")
        assert conn.executed == ["CREATE VIEW v AS SELECT 1"]
        assert conn.commits == 1

    def test_only_comments(self):
        conn = FakeConnection()
        assert mod.execute_statements(conn, ["-- nothing"], "v") == (True, "")
        assert conn.commits == 0

    def test_failure_rolls_back(self):
        conn = FakeConnection(fail_on="VIEW b")
        ok, err = mod.execute_statements(conn, ["CREATE VIEW a AS SELECT 1", "CREATE VIEW b AS SELECT 1"], "b")
        assert not ok
        assert err == "boom"
        assert conn.rollbacks == 1
        assert conn.commits == 0
