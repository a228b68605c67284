import pytest

from wallet_workspace.filters import (
    apply_filters,
    build_filter,
    describe_filter,
    describe_operator,
    get_available_operators,
    row_matches_filter,
    validate_filter,
)
from wallet_workspace.parsers import MalformedInputError


ROWS = [
    {"wallet": "Alpha", "pnl": "1,200.50", "tier": " Gold "},
    {"wallet": "beta", "pnl": "-40", "tier": "silver"},
    {"wallet": "gamma", "pnl": "", "tier": "gold plus"},
    {"wallet": "delta", "pnl": "15%", "tier": ""},
]


def numeric_filter(operator, value, column="pnl", data_type="numeric"):
    return validate_filter({
        "columnKey": column,
        "dataType": data_type,
        "operator": {"type": data_type, "operator": operator},
        "value": value,
    })


def text_filter(operator, value, column="tier"):
    return validate_filter({
        "columnKey": column,
        "dataType": "text",
        "operator": {"type": "text", "operator": operator},
        "value": value,
    })


def test_operator_sets_follow_data_type():
    assert get_available_operators("currency") == ["range", "greaterThan", "lessThan"]
    assert get_available_operators("percent") == ["range", "greaterThan", "lessThan"]
    assert get_available_operators("text") == ["equals", "contains"]
    assert get_available_operators("unknown") == ["equals", "contains"]
    assert describe_operator("range") == "Within range"
    assert describe_operator("somethingElse") == "Custom"


def test_empty_filter_list_keeps_every_row():
    result = apply_filters(ROWS, [])

    assert result == ROWS
    assert result is not ROWS


def test_numeric_filters_skip_missing_values():
    greater = apply_filters(ROWS, [numeric_filter("greaterThan", 0)])
    less = apply_filters(ROWS, [numeric_filter("lessThan", 100)])

    assert [row["wallet"] for row in greater] == ["Alpha", "delta"]
    assert [row["wallet"] for row in less] == ["beta", "delta"]


def test_range_is_inclusive_and_order_independent():
    definition = numeric_filter("range", [20, "-40"])

    assert definition["value"] == [-40.0, 20.0]
    assert [row["wallet"] for row in apply_filters(ROWS, [definition])] == ["beta", "delta"]


def test_text_filters_ignore_case_and_whitespace():
    equals = apply_filters(ROWS, [text_filter("equals", "gold")])
    contains = apply_filters(ROWS, [text_filter("contains", "GOLD")])

    assert [row["wallet"] for row in equals] == ["Alpha"]
    assert [row["wallet"] for row in contains] == ["Alpha", "gamma"]


def test_filters_are_combined_with_and():
    filters = [numeric_filter("greaterThan", 0), text_filter("contains", "gold")]

    assert [row["wallet"] for row in apply_filters(ROWS, filters)] == ["Alpha"]


def test_row_without_column_does_not_match():
    assert row_matches_filter({"wallet": "x"}, numeric_filter("greaterThan", 0)) is False
    assert row_matches_filter({"wallet": "x"}, text_filter("contains", "g")) is False


def test_validate_filter_builds_description_and_id():
    definition = numeric_filter("greaterThan", "0")

    assert definition["value"] == 0.0
    assert definition["description"] == "pnl Greater than 0"
    assert definition["operator"] == {"type": "numeric", "operator": "greaterThan"}
    assert len(definition["id"]) == 32
    assert describe_filter("tier", "equals", "gold") == 'tier Exact match "gold"'


@pytest.mark.parametrize(
    "payload",
    [
        {"columnKey": "pnl", "dataType": "numeric", "operator": {"type": "numeric", "operator": "contains"}, "value": "1"},
        {"columnKey": "pnl", "dataType": "numeric", "operator": {"type": "text", "operator": "greaterThan"}, "value": 1},
        {"columnKey": "pnl", "dataType": "numeric", "operator": {"type": "numeric", "operator": "range"}, "value": 5},
        {"columnKey": "pnl", "dataType": "numeric", "operator": {"type": "numeric", "operator": "greaterThan"}, "value": [1, 2]},
        {"columnKey": "pnl", "dataType": "numeric", "operator": {"type": "numeric", "operator": "lessThan"}, "value": "lots"},
        {"columnKey": "tier", "dataType": "text", "operator": {"type": "text", "operator": "equals"}, "value": "  "},
        {"columnKey": "", "dataType": "text", "operator": {"type": "text", "operator": "equals"}, "value": "x"},
        {"columnKey": "tier", "dataType": "boolean", "operator": {"type": "boolean", "operator": "equals"}, "value": "x"},
        "not a filter",
    ],
)
def test_validate_filter_rejects_malformed_definitions(payload):
    with pytest.raises(MalformedInputError):
        validate_filter(payload)


def test_build_filter_uses_column_metadata():
    column = {"metric": "win_rate", "data_type": "percent"}

    definition = build_filter(column, "range", [40, 60])

    assert definition["dataType"] == "percent"
    assert definition["description"] == "win_rate Within range 40 to 60"
    assert apply_filters([{"win_rate": "55%"}, {"win_rate": "61%"}], [definition]) == [{"win_rate": "55%"}]


def test_reversed_range_matches_both_bounds_exactly():
    definition = {
        "columnKey": "x",
        "dataType": "numeric",
        "operator": {"type": "numeric", "operator": "range"},
        "value": [10, 5],
    }
    rows = [{"x": "4"}, {"x": "5"}, {"x": "7"}, {"x": "10"}, {"x": "11"}]

    assert [row["x"] for row in rows if row_matches_filter(row, definition)] == ["5", "7", "10"]
    assert apply_filters([{"x": "5"}, {"x": "10"}], [definition]) == [{"x": "5"}, {"x": "10"}]


def test_apply_filters_is_idempotent():
    filters = [numeric_filter("lessThan", 100), text_filter("contains", "l")]

    once = apply_filters(ROWS, filters)

    assert apply_filters(once, filters) == once
    assert [row["wallet"] for row in once] == ["beta"]
