"""
Tests for VBA declaration parsing and stub creation in vba_stub_generator.py.
Run with:  python -m pytest test_vba_stub_generator.py -v
"""

import psycopg2
import pytest

import vba_stub_generator as mod


MODULE_SOURCE = """Option Compare Database

Public Function GetRate(ByVal Region As String, Optional Qty As Long = 1) As Currency
    GetRate = 0
End Function

Private Sub LogIt(msg$)
End Sub

Function Total#(a, b As Double)
End Function

Public Function Wrapped(a As Long, _
    b As Integer) As Boolean
End Function

Declare PtrSafe Function GetTickCount Lib "kernel32" () As Long
"""


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, stmt, args=None):
        conn = self.conn
        if conn.break_on and conn.break_on in stmt:
            raise psycopg2.OperationalError("connection lost")
        if stmt.startswith("CREATE") and conn.fail_on and conn.fail_on in stmt:
            raise psycopg2.ProgrammingError("syntax error at or near \"x\"\n")
        conn.executed.append(stmt)
        conn.autocommit_seen.append(conn.autocommit)
        if "pg_proc" in stmt:
            assert args == ("public",)
            self._rows = [(n,) for n in conn.existing]

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, existing=(), fail_on=None, break_on=None, autocommit=False):
        self.existing = list(existing)
        self.fail_on = fail_on
        self.break_on = break_on
        self.autocommit = autocommit
        self.autocommit_seen = []
        self.executed = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def creates(self):
        return [s for s in self.executed if s.startswith("CREATE")]


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.returned = []

    def getconn(self):
        return self.conn

    def putconn(self, conn):
        self.returned.append(conn)


# ===========================================================================
# 1. Declaration parsing
# ===========================================================================
class TestParseDeclarations:
    def test_names_and_kinds(self):
        decls = mod.parse_vba_declarations(MODULE_SOURCE, "modRates")
        assert [(d.name, d.is_sub) for d in decls] == \
            [("GetRate", False), ("LogIt", True), ("Total", False), ("Wrapped", False)]
        assert all(d.module_name == "modRates" for d in decls)

    def test_parameters(self):
        decls = {d.name: d for d in mod.parse_vba_declarations(MODULE_SOURCE)}
        assert decls["GetRate"].params == [mod.VbaParameter("Region", "String"), mod.VbaParameter("Qty", "Long")]
        assert decls["LogIt"].params == [mod.VbaParameter("msg", "String")]
        assert decls["Total"].params == [mod.VbaParameter("a", None), mod.VbaParameter("b", "Double")]

    def test_return_types(self):
        decls = {d.name: d for d in mod.parse_vba_declarations(MODULE_SOURCE)}
        assert decls["GetRate"].return_type == "Currency"
        assert decls["LogIt"].return_type is None
        assert decls["Total"].return_type == "Double"

    def test_line_continuation(self):
        decls = {d.name: d for d in mod.parse_vba_declarations(MODULE_SOURCE)}
        assert decls["Wrapped"].params == [mod.VbaParameter("a", "Long"), mod.VbaParameter("b", "Integer")]
        assert decls["Wrapped"].return_type == "Boolean"

    def test_empty_source(self):
        assert mod.parse_vba_declarations(None) == []
        assert mod.parse_vba_declarations("Option Explicit\n") == []

    @pytest.mark.parametrize("vba,pg", [
        ("Integer", "smallint"),
        ("Long", "bigint"),
        ("Currency", "numeric(19,4)"),
        ("Date", "timestamp"),
        ("String * 10", "text"),
        (None, "text"),
        ("Recordset", "text"),
    ])
    def test_type_mapping(self, vba, pg):
        assert mod.map_vba_type_to_pg(vba) == pg


# ===========================================================================
# 2. DDL
# ===========================================================================
class TestStubDdl:
    def test_function(self):
        decl = mod.VbaDeclaration("GetRate", [mod.VbaParameter("Region", "String"),
                                              mod.VbaParameter("Qty", "Long")], "Currency")
        assert mod.build_stub_ddl("public", decl) == (
            'CREATE OR REPLACE FUNCTION "public"."getrate"("region" text, "qty" bigint)\n'
            "RETURNS numeric(19,4) AS $$\n"
            "BEGIN\n"
            "  RETURN NULL;\n"
            "END;\n"
            "$$ LANGUAGE plpgsql")

    def test_sub(self):
        ddl = mod.build_stub_ddl("public", mod.VbaDeclaration("LogIt", [], is_sub=True))
        assert ddl.startswith('CREATE OR REPLACE FUNCTION "public"."logit"()\nRETURNS void AS $$')
        assert "  NULL;\n" in ddl
        assert "RETURN" not in ddl.split("AS $$", 1)[1]

    def test_duplicate_parameter_names(self):
        decl = mod.VbaDeclaration("F", [mod.VbaParameter("a"), mod.VbaParameter("A")])
        assert '("a" text, "a_2" text)' in mod.build_stub_ddl("public", decl)

    def test_text_stub(self):
        ddl = mod.build_text_stub_ddl("public", "getrate", 2)
        assert ddl.startswith('CREATE OR REPLACE FUNCTION "public"."getrate"(p1 text, p2 text)\nRETURNS text')

    def test_collect_stub_calls(self):
        calls = mod.collect_stub_calls("public", [
            'SELECT "public"."getrate"("region", 1) FROM x',
            'SELECT "public"."getrate"(a), "public"."fmt"() FROM y',
            'CREATE OR REPLACE FUNCTION "public"."other"(a text)',
        ])
        assert calls == {"getrate": 2, "fmt": 0}

    def test_collect_ignores_other_schema(self):
        assert mod.collect_stub_calls("public", ['SELECT "sales"."f"(1)']) == {}


# ===========================================================================
# 3. Creating stubs
# ===========================================================================
class TestCreateStubFunctions:
    DECLS = [
        mod.VbaDeclaration("GetRate", [mod.VbaParameter("Region", "String")], "Currency", module_name="Module1"),
        mod.VbaDeclaration("Bad", [], "Long", module_name="Module1"),
    ]

    def test_creates_and_commits(self):
        conn = FakeConnection()
        report = mod.create_stub_functions(conn, "public", self.DECLS[:1])
        assert report.created == ["getrate"]
        assert conn.executed[1:] == [
            "SAVEPOINT vba_stub",
            mod.build_stub_ddl("public", self.DECLS[0]),
            "RELEASE SAVEPOINT vba_stub",
        ]
        assert conn.commits == 1
        assert conn.rollbacks == 0

    def test_failed_create_rolls_back_to_savepoint(self):
        conn = FakeConnection(fail_on='"bad"')
        report = mod.create_stub_functions(conn, "public", self.DECLS)
        assert report.created == ["getrate"]
        assert "ROLLBACK TO SAVEPOINT vba_stub" in conn.executed
        assert report.warnings == ['Failed to create stub for bad (module: Module1): syntax error at or near "x"']
        assert conn.commits == 1

    def test_existing_names_skipped(self):
        conn = FakeConnection(existing=["getrate"])
        report = mod.create_stub_functions(conn, "public", self.DECLS)
        assert report.skipped == ["getrate"]
        assert report.created == ["bad"]
        assert len(conn.creates()) == 1

    def test_duplicate_declarations_created_once(self):
        conn = FakeConnection()
        report = mod.create_stub_functions(conn, "public", self.DECLS[:1] * 2)
        assert report.created == ["getrate"]

    def test_outer_failure_rolls_back_and_raises(self):
        conn = FakeConnection(break_on="pg_proc")
        with pytest.raises(psycopg2.OperationalError):
            mod.create_stub_functions(conn, "public", self.DECLS)
        assert conn.rollbacks == 1
        assert conn.commits == 0

    def test_autocommit_restored(self):
        conn = FakeConnection(autocommit=True)
        mod.create_stub_functions(conn, "public", self.DECLS[:1])
        assert conn.autocommit_seen and not any(conn.autocommit_seen)
        assert conn.autocommit is True

    def test_pool(self):
        conn = FakeConnection()
        pool = FakePool(conn)
        mod.create_stub_functions(pool, "public", self.DECLS[:1])
        assert pool.returned == [conn]
        assert conn.commits == 1

    def test_nothing_to_do(self):
        conn = FakeConnection()
        report = mod.create_stub_functions(conn, "public", [])
        assert report.created == [] and conn.executed == []

    def test_connection_required(self):
        with pytest.raises(ValueError):
            mod.create_stub_functions(None, "public", self.DECLS)
        with pytest.raises(ValueError):
            mod.ensure_stubs_for_sql(None, "public", ["SELECT 1"])


class TestEnsureStubsForSql:
    def test_text_stubs_for_calls(self):
        conn = FakeConnection(existing=["fmt"])
        report = mod.ensure_stubs_for_sql(conn, "public", [
            'CREATE VIEW "public"."v" AS SELECT "public"."getrate"(a, b), "public"."fmt"(c) FROM t',
        ])
        assert report.created == ["getrate"]
        assert report.skipped == ["fmt"]
        assert conn.creates() == [mod.build_text_stub_ddl("public", "getrate", 2)]

    def test_no_calls(self):
        conn = FakeConnection()
        report = mod.ensure_stubs_for_sql(conn, "public", ["SELECT 1"])
        assert report.created == [] and conn.executed == []
