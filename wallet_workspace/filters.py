import uuid

from .parsers import MalformedInputError, parse_number


NUMERIC_OPERATORS = ["range", "greaterThan", "lessThan"]
TEXT_OPERATORS = ["equals", "contains"]
NUMERIC_FAMILIES = {"numeric", "currency", "ratio", "percent"}

OPERATOR_LABELS = {
    "range": "Within range",
    "greaterThan": "Greater than",
    "lessThan": "Less than",
    "equals": "Exact match",
    "contains": "Contains text",
}


def get_available_operators(data_type):
    if data_type in NUMERIC_FAMILIES:
        return list(NUMERIC_OPERATORS)
    return list(TEXT_OPERATORS)


def describe_operator(operator):
    return OPERATOR_LABELS.get(operator, "Custom")


def is_numeric_type(data_type):
    return data_type in NUMERIC_FAMILIES


def _range_bounds(value):
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return None
    lower = parse_number(value[0])
    upper = parse_number(value[1])
    if lower is None or upper is None:
        return None
    return min(lower, upper), max(lower, upper)


def _scalar_target(value):
    if isinstance(value, (list, tuple, dict)):
        return None
    return parse_number(value)


def _matches_text(cell, operator, value):
    if isinstance(value, (list, tuple, dict)) or value is None:
        return False
    cell_text = (cell or "").strip().lower()
    target = str(value).strip().lower()
    if operator == "equals":
        return cell_text == target
    if operator == "contains":
        return target in cell_text
    return False


def _matches_numeric(cell, operator, value):
    number = parse_number(cell)
    if number is None:
        return False

    if operator == "range":
        bounds = _range_bounds(value)
        if bounds is None:
            return False
        return bounds[0] <= number <= bounds[1]

    target = _scalar_target(value)
    if target is None:
        return False
    if operator == "greaterThan":
        return number > target
    if operator == "lessThan":
        return number < target
    return False


def row_matches_filter(row, filter_definition):
    operator = (filter_definition.get("operator") or {}).get("operator")
    cell = row.get(filter_definition.get("columnKey"), "")
    value = filter_definition.get("value")

    if is_numeric_type(filter_definition.get("dataType")):
        return _matches_numeric(cell, operator, value)
    return _matches_text(cell, operator, value)


def apply_filters(rows, filters):
    if not filters:
        return list(rows)
    return [row for row in rows if all(row_matches_filter(row, f) for f in filters)]


def format_filter_value(value):
    if isinstance(value, (list, tuple)):
        lower, upper = sorted(value)
        return f"{_format_number(lower)} to {_format_number(upper)}"
    if isinstance(value, (int, float)):
        return _format_number(value)
    return f'"{value}"'


def _format_number(value):
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def describe_filter(column_label, operator, value):
    return f"{column_label} {describe_operator(operator)} {format_filter_value(value)}"


def validate_filter(payload):
    """Check a filter template and return it as a FilterDefinition.

    The operator has to belong to the data type's operator set and the value
    must be a ``[min, max]`` pair exactly when the operator is ``range``.
    """
    if not isinstance(payload, dict):
        raise MalformedInputError("Filter must be an object.")

    column_key = (payload.get("columnKey") or "").strip() if isinstance(payload.get("columnKey"), str) else ""
    if not column_key:
        raise MalformedInputError("Filter column is required.")
    column_label = payload.get("columnLabel") if isinstance(payload.get("columnLabel"), str) else ""
    column_label = column_label.strip() or column_key

    data_type = payload.get("dataType")
    if data_type not in NUMERIC_FAMILIES and data_type != "text":
        raise MalformedInputError(f"Unsupported data type for filter on {column_key}: {data_type!r}.")

    operator = payload.get("operator") or {}
    if not isinstance(operator, dict):
        raise MalformedInputError("Filter operator must be an object with type and operator.")
    operator_type = operator.get("type") or data_type
    operator_name = operator.get("operator")
    if operator_type != data_type:
        raise MalformedInputError(f"Operator type {operator_type!r} does not match column type {data_type!r}.")
    if operator_name not in get_available_operators(data_type):
        raise MalformedInputError(f"Operator {operator_name!r} is not available for {data_type} columns.")

    value = payload.get("value")
    if operator_name == "range":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise MalformedInputError("Range filters need a minimum and a maximum value.")
        lower, upper = (parse_number(bound) for bound in value)
        if lower is None or upper is None:
            raise MalformedInputError("Range bounds must be numbers.")
        value = [min(lower, upper), max(lower, upper)]
    elif isinstance(value, (list, tuple, dict)) or value is None:
        raise MalformedInputError(f"{describe_operator(operator_name)} filters need a single value.")
    elif is_numeric_type(data_type):
        number = parse_number(value)
        if number is None:
            raise MalformedInputError("Numeric filters need a numeric value.")
        value = number
    else:
        value = str(value).strip()
        if not value:
            raise MalformedInputError("Text filters need a value.")

    description = payload.get("description")
    if not isinstance(description, str) or not description.strip():
        description = describe_filter(column_label, operator_name, value)

    return {
        "id": payload.get("id") or uuid.uuid4().hex,
        "columnKey": column_key,
        "columnLabel": column_label,
        "dataType": data_type,
        "operator": {"type": data_type, "operator": operator_name},
        "value": value,
        "description": description.strip(),
    }


def build_filter(column, operator, value, description=None):
    return validate_filter(
        {
            "columnKey": column["metric"],
            "columnLabel": column["metric"],
            "dataType": column["data_type"],
            "operator": {"type": column["data_type"], "operator": operator},
            "value": value,
            "description": description,
        }
    )
