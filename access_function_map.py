"""
Access -> PostgreSQL function, format and type translation tables.

FUNCTION_MAP maps a canonical (lower-case) legacy function name to a transform
that receives the already-split argument texts and returns PostgreSQL SQL.
FORMAT_MAP maps Access named/explicit formats to to_char() patterns, and
LEGACY_TYPE_MAP maps declared parameter / VBA types to PostgreSQL types.
"""

from __future__ import annotations

import re
from typing import Callable, Optional

Transform = Callable[[list], str]


# ---------------------------------------------------------------------------
# Access format -> to_char pattern
# ---------------------------------------------------------------------------

FORMAT_MAP = {
    "General Date": "YYYY-MM-DD HH24:MI:SS",
    "Long Date": "FMDay, FMMonth DD, YYYY",
    "Medium Date": "DD-Mon-YY",
    "Short Date": "MM/DD/YYYY",
    "Long Time": "HH24:MI:SS",
    "Medium Time": "HH:MI AM",
    "Short Time": "HH24:MI",
    "mm/dd/yyyy": "MM/DD/YYYY",
    "dd/mm/yyyy": "DD/MM/YYYY",
    "yyyy-mm-dd": "YYYY-MM-DD",
    "General Number": "9999999999D99",
    "Currency": "L9G999G999D99",
    "Fixed": "9999999999D99",
    "Standard": "9G999G999D99",
    "Percent": "999D99%",
    "#,##0": "FM9G999G990",
    "#,##0.00": "FM9G999G990D00",
    "0": "FM0",
    "0.00": "FM0D00",
    "0%": "FM0%",
    "0.00%": "FM0D00%",
}

# DateAdd/DateDiff/DatePart unit codes
INTERVAL_UNITS = {
    "yyyy": "year", "q": "month", "m": "month", "y": "day", "d": "day",
    "w": "day", "ww": "week", "h": "hour", "n": "minute", "s": "second",
}

DATE_PARTS = {
    "yyyy": "YEAR", "q": "QUARTER", "m": "MONTH", "y": "DOY", "d": "DAY",
    "w": "DOW", "ww": "WEEK", "h": "HOUR", "n": "MINUTE", "s": "SECOND",
}


# ---------------------------------------------------------------------------
# Declared parameter / VBA type -> PostgreSQL type
# ---------------------------------------------------------------------------

LEGACY_TYPE_MAP = {
    "boolean": "boolean",
    "yesno": "boolean",
    "bit": "boolean",
    "byte": "smallint",
    "integer": "smallint",
    "int": "smallint",
    "short": "smallint",
    "long": "bigint",
    "longlong": "bigint",
    "currency": "numeric(19,4)",
    "money": "numeric(19,4)",
    "single": "real",
    "ieeesingle": "real",
    "double": "double precision",
    "ieeedouble": "double precision",
    "float": "double precision",
    "decimal": "numeric",
    "date": "timestamp",
    "datetime": "timestamp",
    "string": "text",
    "text": "text",
    "memo": "text",
    "longtext": "text",
    "char": "text",
    "varchar": "text",
    "variant": "text",
    "object": "text",
}

# Declared types that say nothing about the value (resolution falls back to inference)
UNTYPED_LEGACY_TYPES = frozenset({"variant", "object", "value"})

DEFAULT_PG_TYPE = "text"


def _normalize_legacy_type(legacy_type: Optional[str]) -> str:
    t = (legacy_type or "").strip().lower()
    t = re.sub(r"\s*\(.*\)\s*$", "", t)       # Text(255)
    t = re.sub(r"\s*\*\s*\d+\s*$", "", t)     # String * 10
    return t.replace(" ", "")


def map_legacy_type(legacy_type: Optional[str]) -> str:
    """PostgreSQL type for an Access/VBA type name; unknown or missing -> text."""
    return LEGACY_TYPE_MAP.get(_normalize_legacy_type(legacy_type), DEFAULT_PG_TYPE)


def is_known_legacy_type(legacy_type: Optional[str]) -> bool:
    """True if the type is in the table and actually pins down the value's type."""
    t = _normalize_legacy_type(legacy_type)
    return t in LEGACY_TYPE_MAP and t not in UNTYPED_LEGACY_TYPES


# ---------------------------------------------------------------------------
# Function transforms
# ---------------------------------------------------------------------------

def _need(args: list, count: int, name: str) -> None:
    if len(args) < count:
        raise ValueError(f"{name}() expects at least {count} argument(s), got {len(args)}")


def _unit(arg: str) -> str:
    return arg.replace('"', "").replace("'", "").strip().lower()


def _nz(args):
    _need(args, 1, "Nz")
    if len(args) >= 2:
        return f"COALESCE({args[0]}, {args[1]})"
    return f"COALESCE({args[0]}, '')"


def _iif(args):
    _need(args, 2, "IIf")
    otherwise = args[2] if len(args) > 2 and args[2] else "NULL"
    return f"CASE WHEN {args[0]} THEN {args[1]} ELSE {otherwise} END"


def _switch(args):
    _need(args, 2, "Switch")
    whens = "".join(f" WHEN {args[i]} THEN {args[i + 1]}" for i in range(0, len(args) - 1, 2))
    return f"CASE{whens} END"


def _choose(args):
    _need(args, 2, "Choose")
    whens = "".join(f" WHEN {i} THEN {args[i]}" for i in range(1, len(args)))
    return f"CASE {args[0]}{whens} END"


def _mid(args):
    _need(args, 2, "Mid")
    if len(args) >= 3:
        return f"SUBSTRING({args[0]} FROM {args[1]} FOR {args[2]})"
    return f"SUBSTRING({args[0]} FROM {args[1]})"


def _instr(args):
    _need(args, 2, "InStr")
    if len(args) >= 3:
        return f"POSITION({args[2]} IN SUBSTRING({args[1]} FROM {args[0]})) + {args[0]} - 1"
    return f"POSITION({args[1]} IN {args[0]})"


def _instrrev(args):
    _need(args, 2, "InStrRev")
    return f"(LENGTH({args[0]}) - POSITION(REVERSE({args[1]}) IN REVERSE({args[0]})) + 1)"


def _strconv(args):
    _need(args, 2, "StrConv")
    conv = args[1].strip()
    if conv == "1":
        return f"UPPER({args[0]})"
    if conv == "2":
        return f"LOWER({args[0]})"
    if conv == "3":
        return f"INITCAP({args[0]})"
    return f"({args[0]})"


def _dateadd(args):
    _need(args, 3, "DateAdd")
    unit = _unit(args[0])
    pg_unit = INTERVAL_UNITS.get(unit, "day")
    amount = f"({args[1]}) * 3" if unit == "q" else args[1]
    return f"({args[2]} + ({amount}) * INTERVAL '1 {pg_unit}')"


def _datediff(args):
    _need(args, 3, "DateDiff")
    unit = _unit(args[0])
    start, end = args[1], args[2]
    if unit == "m":
        return (f"(EXTRACT(YEAR FROM {end}::date) * 12 + EXTRACT(MONTH FROM {end}::date)"
                f" - EXTRACT(YEAR FROM {start}::date) * 12 - EXTRACT(MONTH FROM {start}::date))::integer")
    if unit == "q":
        return (f"((EXTRACT(YEAR FROM {end}::date) * 4 + EXTRACT(QUARTER FROM {end}::date))"
                f" - (EXTRACT(YEAR FROM {start}::date) * 4 + EXTRACT(QUARTER FROM {start}::date)))::integer")
    if unit == "yyyy":
        return f"(EXTRACT(YEAR FROM {end}::date) - EXTRACT(YEAR FROM {start}::date))::integer"
    if unit == "ww":
        return f"(({end}::date - {start}::date) / 7)"
    if unit == "h":
        return f"(EXTRACT(EPOCH FROM {end}::timestamp - {start}::timestamp) / 3600)::integer"
    if unit == "n":
        return f"(EXTRACT(EPOCH FROM {end}::timestamp - {start}::timestamp) / 60)::integer"
    if unit == "s":
        return f"(EXTRACT(EPOCH FROM {end}::timestamp - {start}::timestamp))::integer"
    return f"({end}::date - {start}::date)"


def _datepart(args):
    _need(args, 2, "DatePart")
    unit = _unit(args[0])
    if unit == "w":
        # Access weekdays run 1 (Sunday) to 7
        return f"EXTRACT(DOW FROM {args[1]})::integer + 1"
    return f"EXTRACT({DATE_PARTS.get(unit, 'DAY')} FROM {args[1]})::integer"


def _format(args):
    _need(args, 1, "Format")
    fmt = (args[1] if len(args) > 1 else "").replace('"', "").replace("'", "")
    return f"to_char({args[0]}, '{FORMAT_MAP.get(fmt, fmt)}')"


def _round(args):
    _need(args, 1, "Round")
    if len(args) >= 2:
        return f"ROUND({args[0]}, {args[1]})"
    return f"ROUND({args[0]})"


def _unary(template: str, name: str) -> Transform:
    def transform(args):
        _need(args, 1, name)
        return template.format(*args)
    return transform


def _binary(template: str, name: str) -> Transform:
    def transform(args):
        _need(args, 2, name)
        return template.format(*args)
    return transform


def _ternary(template: str, name: str) -> Transform:
    def transform(args):
        _need(args, 3, name)
        return template.format(*args)
    return transform


def _build_function_map(entries) -> dict[str, tuple[str, Transform]]:
    table: dict[str, tuple[str, Transform]] = {}
    for name, transform in entries:
        key = name.lower()
        if key in table:
            raise ValueError(f"duplicate function catalog entry: {name}")
        table[key] = (name, transform)
    return table


FUNCTION_MAP = _build_function_map([
    # Null handling
    ("Nz", _nz),
    ("IsNull", _unary("({0} IS NULL)", "IsNull")),
    ("IsDate", _unary("({0}::text ~ '^\\d{{4}}-\\d{{2}}-\\d{{2}}')", "IsDate")),
    ("IsNumeric", _unary("({0}::text ~ '^-?[0-9]+(\\.[0-9]+)?$')", "IsNumeric")),

    # Conditional
    ("IIf", _iif),
    ("Switch", _switch),
    ("Choose", _choose),

    # String
    ("Len", _unary("LENGTH({0})", "Len")),
    ("Mid", _mid),
    ("Mid$", _mid),
    ("Left", _binary("LEFT({0}, {1})", "Left")),
    ("Left$", _binary("LEFT({0}, {1})", "Left$")),
    ("Right", _binary("RIGHT({0}, {1})", "Right")),
    ("Right$", _binary("RIGHT({0}, {1})", "Right$")),
    ("Trim", _unary("TRIM({0})", "Trim")),
    ("Trim$", _unary("TRIM({0})", "Trim$")),
    ("LTrim", _unary("LTRIM({0})", "LTrim")),
    ("RTrim", _unary("RTRIM({0})", "RTrim")),
    ("InStr", _instr),
    ("InStrRev", _instrrev),
    ("UCase", _unary("UPPER({0})", "UCase")),
    ("UCase$", _unary("UPPER({0})", "UCase$")),
    ("LCase", _unary("LOWER({0})", "LCase")),
    ("LCase$", _unary("LOWER({0})", "LCase$")),
    ("Replace", _ternary("REPLACE({0}, {1}, {2})", "Replace")),
    ("Str", _unary("({0})::text", "Str")),
    ("Str$", _unary("({0})::text", "Str$")),
    ("StrConv", _strconv),
    ("Space", _unary("REPEAT(' ', {0})", "Space")),
    ("String", _binary("REPEAT({1}, {0})", "String")),
    ("StrReverse", _unary("REVERSE({0})", "StrReverse")),
    ("Asc", _unary("ASCII({0})", "Asc")),
    ("Chr", _unary("CHR({0})", "Chr")),
    ("Chr$", _unary("CHR({0})", "Chr$")),

    # Type conversion
    ("CInt", _unary("({0})::integer", "CInt")),
    ("CLng", _unary("({0})::bigint", "CLng")),
    ("CDbl", _unary("({0})::double precision", "CDbl")),
    ("CSng", _unary("({0})::real", "CSng")),
    ("CStr", _unary("({0})::text", "CStr")),
    ("CDate", _unary("({0})::date", "CDate")),
    ("CBool", _unary("({0})::boolean", "CBool")),
    ("CDec", _unary("({0})::numeric", "CDec")),
    ("CCur", _unary("({0})::numeric(19,4)", "CCur")),
    ("Val", _unary("({0})::numeric", "Val")),

    # Date/time
    ("DateSerial", _ternary("make_date({0}, {1}, {2})", "DateSerial")),
    ("TimeSerial", _ternary("make_time({0}, {1}, {2})", "TimeSerial")),
    ("DateAdd", _dateadd),
    ("DateDiff", _datediff),
    ("DatePart", _datepart),
    ("DateValue", _unary("({0})::date", "DateValue")),
    ("TimeValue", _unary("({0})::time", "TimeValue")),
    ("Year", _unary("EXTRACT(YEAR FROM {0})::integer", "Year")),
    ("Month", _unary("EXTRACT(MONTH FROM {0})::integer", "Month")),
    ("Day", _unary("EXTRACT(DAY FROM {0})::integer", "Day")),
    ("Hour", _unary("EXTRACT(HOUR FROM {0})::integer", "Hour")),
    ("Minute", _unary("EXTRACT(MINUTE FROM {0})::integer", "Minute")),
    ("Second", _unary("EXTRACT(SECOND FROM {0})::integer", "Second")),
    ("Weekday", _unary("EXTRACT(DOW FROM {0})::integer + 1", "Weekday")),
    ("MonthName", _unary("to_char(make_date(2000, {0}, 1), 'FMMonth')", "MonthName")),
    ("WeekdayName", _unary("to_char(make_date(2000, 1, 1 + ({0})), 'FMDay')", "WeekdayName")),

    ("Format", _format),
    ("Format$", _format),

    # Math
    ("Int", _unary("FLOOR({0})", "Int")),
    ("Fix", _unary("TRUNC({0})", "Fix")),
    ("Abs", _unary("ABS({0})", "Abs")),
    ("Round", _round),
    ("Sgn", _unary("SIGN({0})", "Sgn")),
    ("Sqr", _unary("SQRT({0})", "Sqr")),
    ("Log", _unary("LN({0})", "Log")),
    ("Exp", _unary("EXP({0})", "Exp")),

    # Aggregates backed by the custom first_agg/last_agg aggregates
    ("First", _unary("first_agg({0})", "First")),
    ("Last", _unary("last_agg({0})", "Last")),
])

# Legacy names whose call head is spelled identically in PostgreSQL output
PG_NATIVE_NAMES = frozenset({
    "left", "right", "trim", "ltrim", "rtrim", "replace", "abs", "round", "exp", "chr",
    "log", "format",
})


def catalog_call_pattern(names=None) -> re.Pattern:
    """
    Regex matching ``Name(`` for the given catalog names (default: all), case-insensitive.
    Group 1 is the name; a name preceded by a word char, '.', '"' or '$' is not a call head.
    """
    keys = sorted(names if names is not None else FUNCTION_MAP.keys(), key=len, reverse=True)
    alternation = "|".join(re.escape(FUNCTION_MAP[k][0]) if k in FUNCTION_MAP else re.escape(k)
                           for k in keys)
    return re.compile(r"(?<![\w.\"$])(" + alternation + r")(?![\w$])\s*\(", re.IGNORECASE)


def lookup(name: str) -> Optional[Transform]:
    entry = FUNCTION_MAP.get(name.lower())
    return entry[1] if entry else None


# Domain aggregate functions (compiled to correlated subqueries, not catalog transforms)
DOMAIN_FUNCTION_NAMES = ("DLookUp", "DCount", "DSum", "DAvg", "DMin", "DMax", "DFirst", "DLast")
