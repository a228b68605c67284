import math

from .parsers import MalformedInputError, parse_number


ANALYSIS_OPERATORS = ["+", "-", "*", "/"]
DEFAULT_ANALYSIS_WEIGHT = 1
MAX_RESULT_NAME_LENGTH = 120
CONDITIONAL_MODES = {"boolean", "binary", "min", "max", "range"}


def _empty_diagnostics():
    return {"mean": 0.0, "std_dev": 0.0, "max_z": 0.0}


def _mean_and_std(values):
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return mean, math.sqrt(variance)


def normalise_score(z_score, max_z):
    if not math.isfinite(z_score) or max_z <= 0:
        return 0.0
    denominator = math.log1p(max_z)
    if denominator == 0:
        return 0.0
    scaled = math.log1p(z_score) / denominator
    return min(1.0, max(0.0, scaled))


def compute_bell_curve_distance(values, raw_values, config=None):
    """Score each row by its log-scaled distance from the column mean.

    Distances are measured in standard deviations of the fitted normal
    curve, so the furthest row scores 1 and rows at the mean score 0.
    """
    present = [value for value in values if value is not None]
    if not present:
        return {"scores": [None] * len(values), "diagnostics": _empty_diagnostics()}

    mean, std_dev = _mean_and_std(present)
    if std_dev == 0:
        return {
            "scores": [None if value is None else 0.0 for value in values],
            "diagnostics": {"mean": mean, "std_dev": 0.0, "max_z": 0.0},
        }

    z_scores = [None if value is None else abs(value - mean) / std_dev for value in values]
    max_z = max(z for z in z_scores if z is not None)
    scores = [None if z is None else normalise_score(z, max_z) for z in z_scores]
    return {"scores": scores, "diagnostics": {"mean": mean, "std_dev": std_dev, "max_z": max_z}}


def _flag_diagnostics(scores):
    present = [score for score in scores if score is not None]
    if not present:
        return _empty_diagnostics()
    mean, std_dev = _mean_and_std(present)
    max_z = 0.0
    if std_dev > 0:
        max_z = max(abs(score - mean) / std_dev for score in present)
    return {"mean": mean, "std_dev": std_dev, "max_z": max_z}


def compute_conditional_flag(values, raw_values, config=None):
    """Output 1 where the configured condition holds for the row, else 0."""
    empty = {"scores": [None] * len(raw_values), "diagnostics": _empty_diagnostics()}
    if not isinstance(config, dict) or config.get("mode") not in CONDITIONAL_MODES:
        return empty

    mode = config["mode"]
    if mode == "boolean":
        scores = [1.0 if (raw or "").strip().lower() == "true" else 0.0 for raw in raw_values]
    elif mode == "binary":
        target = str(config.get("trueValue") or "").strip().lower()
        if not target:
            return empty
        scores = [1.0 if (raw or "").strip().lower() == target else 0.0 for raw in raw_values]
    elif mode == "range":
        lower = parse_number(config.get("min"))
        upper = parse_number(config.get("max"))
        if lower is None or upper is None:
            return empty
        lower, upper = min(lower, upper), max(lower, upper)
        scores = [1.0 if value is not None and lower <= value <= upper else 0.0 for value in values]
    else:
        threshold = parse_number(config.get("threshold"))
        if threshold is None:
            return empty
        if mode == "min":
            scores = [1.0 if value is not None and value >= threshold else 0.0 for value in values]
        else:
            scores = [1.0 if value is not None and value <= threshold else 0.0 for value in values]

    return {"scores": scores, "diagnostics": _flag_diagnostics(scores)}


ANALYSIS_METHODS = {
    "bell-curve-distance": {
        "id": "bell-curve-distance",
        "name": "Bell curve anomaly score",
        "short_description": "Highlights outliers by measuring log-scaled distance from the mean.",
        "description": (
            "Creates a bell curve from the column values and scores each row based on how far it sits "
            "from the centre. The furthest values converge to 1, while typical values stay near 0."
        ),
        "compute": compute_bell_curve_distance,
    },
    "conditional-flag": {
        "id": "conditional-flag",
        "name": "Conditional statement",
        "short_description": "Outputs 1 when a custom rule is true for the row, otherwise 0.",
        "description": (
            "Define a true/false check for the selected column: match a specific value, interpret boolean "
            "text, or set a numeric threshold or range. Matching rows score 1, the rest score 0."
        ),
        "compute": compute_conditional_flag,
    },
}


def list_methods():
    return [
        {key: method[key] for key in ("id", "name", "short_description", "description")}
        for method in ANALYSIS_METHODS.values()
    ]


def _coerce_weight(value):
    if value is None:
        return DEFAULT_ANALYSIS_WEIGHT
    weight = parse_number(value)
    if weight is None:
        raise MalformedInputError("Step weight must be a number.")
    return weight


def validate_step(payload, position=1):
    if not isinstance(payload, dict):
        raise MalformedInputError(f"Step {position} must be an object.")

    column_key = payload.get("columnKey")
    if not isinstance(column_key, str) or not column_key.strip():
        raise MalformedInputError(f"Step {position} needs a column.")

    method_id = payload.get("methodId")
    method = ANALYSIS_METHODS.get(method_id)
    if method is None:
        raise MalformedInputError(f"Step {position} uses an unknown analysis method: {method_id!r}.")

    config = payload.get("config")
    if config is not None and not isinstance(config, dict):
        raise MalformedInputError(f"Step {position} config must be an object.")

    column_label = payload.get("columnLabel")
    step = {
        "columnKey": column_key.strip(),
        "columnLabel": column_label.strip() if isinstance(column_label, str) and column_label.strip() else column_key.strip(),
        "dataType": payload.get("dataType") or "numeric",
        "methodId": method_id,
        "methodName": payload.get("methodName") or method["name"],
        "weight": _coerce_weight(payload.get("weight")),
    }
    if isinstance(payload.get("description"), str):
        step["description"] = payload["description"]
    if config is not None:
        step["config"] = dict(config)
    return step


def build_analysis_chain(payload):
    if not isinstance(payload, dict):
        raise MalformedInputError("Analysis chain must be an object.")

    result_name = payload.get("resultName")
    result_name = result_name.strip() if isinstance(result_name, str) else ""
    if not result_name:
        raise MalformedInputError("Give the derived column a name.")
    if len(result_name) > MAX_RESULT_NAME_LENGTH:
        raise MalformedInputError(f"Result name must be {MAX_RESULT_NAME_LENGTH} characters or less.")

    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise MalformedInputError("Add at least one analysis step.")
    steps = [validate_step(step, position) for position, step in enumerate(raw_steps, start=1)]

    operators = payload.get("operators")
    if operators is None:
        operators = []
    if not isinstance(operators, list):
        raise MalformedInputError("Operators must be a list.")
    unknown = [op for op in operators if op not in ANALYSIS_OPERATORS]
    if unknown:
        raise MalformedInputError(f"Unsupported operator(s): {', '.join(map(str, unknown))}.")
    if len(operators) != len(steps) - 1:
        raise MalformedInputError(
            f"Operators must connect each step: expected {len(steps) - 1}, got {len(operators)}."
        )

    return {"resultName": result_name, "steps": steps, "operators": list(operators)}


def extract_column_values(rows, column_key):
    return [parse_number(row.get(column_key)) for row in rows]


def _combine(left, operator, right):
    if operator == "+":
        return left + right
    if operator == "-":
        return left - right
    if operator == "*":
        return left * right
    if operator == "/":
        return None if right == 0 else left / right
    return None


def evaluate_chain(rows, chain):
    """Run every step over the rows and fold the step scores left to right.

    A missing score on either side of an operator leaves the other side as
    the running value. Dividing by a zero score gives no value for that row,
    and that empty result is final: later steps are not folded into it.
    """
    steps = chain["steps"]
    operators = chain["operators"]
    if not steps:
        return {"result": [], "step_values": []}

    numeric_cache = {}
    raw_cache = {}
    step_values = []
    for step in steps:
        column_key = step["columnKey"]
        if column_key not in numeric_cache:
            numeric_cache[column_key] = extract_column_values(rows, column_key)
            raw_cache[column_key] = [row.get(column_key) for row in rows]

        method = ANALYSIS_METHODS[step["methodId"]]
        computation = method["compute"](numeric_cache[column_key], raw_cache[column_key], step.get("config"))
        weight = step.get("weight", DEFAULT_ANALYSIS_WEIGHT)
        step_values.append([None if score is None else score * weight for score in computation["scores"]])

    result = []
    for index in range(len(rows)):
        value = step_values[0][index]
        for step_index in range(1, len(steps)):
            next_value = step_values[step_index][index]
            if value is None or next_value is None:
                value = next_value if value is None else value
                continue
            value = _combine(value, operators[step_index - 1], next_value)
            if value is None:
                break
        result.append(value)

    return {"result": result, "step_values": step_values}


def format_score(value):
    if value is None or not math.isfinite(value):
        return ""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def apply_analysis(rows, columns, chain):
    evaluation = evaluate_chain(rows, chain)
    result_name = chain["resultName"]
    computed_rows = []
    for row, value in zip(rows, evaluation["result"]):
        computed = dict(row)
        computed[result_name] = format_score(value)
        computed_rows.append(computed)

    result_columns = list(columns)
    if result_name not in result_columns:
        result_columns.append(result_name)
    return {"columns": result_columns, "rows": computed_rows, "result": evaluation["result"]}
