from datetime import date

import pandas as pd
import pytest

from pipelines.lib.tabular import (
    ColumnInfo,
    ColumnType,
    FilterOperator,
    FilterPredicate,
    TabularSnapshot,
    bind_filters,
    coerce_cell,
    coerce_filters,
    column_letter,
    display_row,
    match_rows,
    parse_date,
    parse_number,
    row_matches,
    select_sheet,
)


def _pred(column: str, op: str, value: str) -> FilterPredicate:
    return FilterPredicate.from_dict({"column": column, "operator": op, "value": value})


def test_column_letters_and_display_rows() -> None:
    assert column_letter(0) == "A"
    assert column_letter(25) == "Z"
    assert column_letter(26) == "AA"
    assert column_letter(27) == "AB"
    assert display_row(0) == 2


def test_parse_number_strips_currency_and_separators() -> None:
    assert parse_number("$1,234.50") == 1234.5
    assert parse_number(" 42 ") == 42.0
    assert parse_number(True) is None
    assert parse_number("abc") is None
    assert parse_number(float("nan")) is None


def test_parse_date_accepts_serials_and_strings() -> None:
    assert parse_date(45296) == date(2024, 1, 5)
    assert parse_date("2024-01-05") == date(2024, 1, 5)
    assert parse_date(pd.Timestamp("2024-01-05 13:45")) == date(2024, 1, 5)
    assert parse_date("next tuesday") is None


def test_coerce_cell_keeps_formulas_and_converts_numeric_text() -> None:
    assert coerce_cell("1,200") == 1200
    assert coerce_cell("3.5") == 3.5
    assert coerce_cell("=SUM(A1:A3)") == "=SUM(A1:A3)"
    assert coerce_cell("   ") is None
    assert coerce_cell("abc") == "abc"


def test_snapshot_from_records_pads_rows_and_infers_types() -> None:
    snap = TabularSnapshot.from_records(
        ["Amount", "When", "Flag", "Calc", "Blank"],
        [
            [1, "2024-01-01", True, "=A2*2"],
            ["2", "2024-02-01", False, "=A3*2", None],
            ["$3", "2024-03-01", True, "=A4*2", ""],
        ],
        name="Orders",
    )
    assert snap.row_count == 3
    assert snap.rows[0][4] is None
    types = {c.name: c.type for c in snap.columns}
    assert types == {
        "Amount": ColumnType.NUMBER,
        "When": ColumnType.DATE,
        "Flag": ColumnType.BOOLEAN,
        "Calc": ColumnType.FORMULA,
        "Blank": ColumnType.EMPTY,
    }
    assert snap.columns[1].letter == "B"
    assert snap.column_index("amount") == 0


def test_snapshot_rejects_ragged_rows() -> None:
    with pytest.raises(ValueError, match="expected 1"):
        TabularSnapshot(columns=(ColumnInfo("A", 0),), rows=((1, 2),))
    with pytest.raises(ValueError, match="at most 1"):
        TabularSnapshot.from_records(["A"], [[1, 2]])


def test_snapshot_dataframe_roundtrip_keeps_order() -> None:
    df = pd.DataFrame({"B": [1, 2], "A": ["x", None]})
    snap = TabularSnapshot.from_dataframe(df)
    assert snap.headers == ["B", "A"]
    assert snap.rows[1][1] is None
    assert snap.to_dataframe()["B"].tolist() == [1, 2]


def test_select_sheet_by_name_index_and_default() -> None:
    book = {"Sales": pd.DataFrame({"x": [1]}), "Costs": pd.DataFrame({"y": [2]})}
    assert select_sheet(book).name == "Sales"
    assert select_sheet(book, "costs").name == "Costs"
    assert select_sheet(book, 1).headers == ["y"]
    with pytest.raises(ValueError, match="sheet not found: Missing"):
        select_sheet(book, "Missing")
    with pytest.raises(ValueError, match="sheet not found: 5"):
        select_sheet(book, 5)
    with pytest.raises(TypeError):
        select_sheet([1, 2, 3])


def test_operator_aliases_parse() -> None:
    assert FilterOperator.parse(">=") is FilterOperator.GREATER_OR_EQUAL
    assert FilterOperator.parse("greater_or_equal") is FilterOperator.GREATER_OR_EQUAL
    assert FilterOperator.parse("date>") is FilterOperator.DATE_GREATER
    assert FilterOperator.parse("before") is FilterOperator.DATE_LESS
    assert FilterOperator.parse("like") is FilterOperator.CONTAINS
    with pytest.raises(ValueError, match="unknown_filter_operator"):
        FilterOperator.parse("between")


def test_equals_numeric_tolerance_date_and_text() -> None:
    assert _pred("A", "equals", "100").matches(100.00005)
    assert not _pred("A", "equals", "100").matches("100.5")
    assert _pred("A", "equals", "2024-01-05").matches(pd.Timestamp("2024-01-05 09:00"))
    assert _pred("A", "equals", "done").matches("Done")
    assert not _pred("A", "equals", "done").matches("Done later")


def test_equals_empty_cell_only_matches_empty_value() -> None:
    assert _pred("A", "equals", "").matches(None)
    assert not _pred("A", "equals", "x").matches(None)
    assert not _pred("A", "equals", "").matches("x")


def test_numeric_and_date_comparisons() -> None:
    assert _pred("A", "greater", "1000").matches("$1,200")
    assert not _pred("A", "greater", "1000").matches("abc")
    assert _pred("A", "lessOrEqual", "5").matches(5)
    assert _pred("A", "dateGreater", "2024-01-01").matches(45296)
    assert not _pred("A", "dateLess", "2024-01-01").matches("not a date")
    assert _pred("A", "dateGreaterOrEqual", "2024-01-05").matches("2024-01-05")


def test_contains_is_case_insensitive() -> None:
    assert _pred("A", "contains", "pro").matches("Widget PRO")
    assert not _pred("A", "contains", "max").matches("Widget PRO")


def test_filter_value_quotes_are_stripped() -> None:
    assert _pred("A", "=", "'Done'").value == "Done"


def test_row_matches_is_conjunction_and_ignores_unknown_columns() -> None:
    headers = ["Status", "Amount"]
    filters = [_pred("Status", "equals", "Done"), _pred("Amount", ">", "10")]
    assert row_matches(["Done", 20], headers, filters)
    assert not row_matches(["Done", 5], headers, filters)
    assert row_matches(["Open", 1], headers, [])
    bound = bind_filters(headers, [_pred("Region", "equals", "EU")])
    assert bound.unresolved and bound.matches(["Open", 1])


def test_match_rows_mask_matches_row_semantics() -> None:
    df = pd.DataFrame({"Status": ["Done", "Open", "done", None], "Amount": [10, 20, 30, 40]})
    mask = match_rows(df, [{"column": "status", "operator": "=", "value": "done"}])
    assert mask.tolist() == [True, False, True, False]
    filters = coerce_filters([{"column": "Amount", "operator": "gte", "value": "20"}])
    headers = list(df.columns)
    expected = [row_matches(list(r), headers, filters) for r in df.itertuples(index=False, name=None)]
    assert match_rows(df, filters).tolist() == expected
    assert match_rows(df, []).all()
