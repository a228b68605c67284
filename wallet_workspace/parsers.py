import csv
import io
import json
import math
import re


DATA_TYPES = ["numeric", "text", "percent", "currency", "ratio"]
HIGHER_IS_VALUES = ["better", "worse", "depends"]
DEFAULT_DATA_TYPE = "numeric"
DEFAULT_HIGHER_IS = "depends"

MEAN_LABELS = {"mean", "average"}
MEDIAN_LABELS = {"median"}


class MalformedInputError(ValueError):
    """Raised when uploaded content or a pipeline definition can't be used."""


def parse_csv(content):
    """Split delimited text into rows of string cells.

    Quotes may wrap a cell; a doubled quote inside quotes is a literal quote
    and separators or newlines inside quotes are part of the cell. Carriage
    returns are dropped and rows whose cells are all blank are skipped.
    """
    rows = []
    row = []
    cell = []
    inside_quotes = False
    index = 0
    length = len(content or "")

    while index < length:
        char = content[index]

        if char == "\r":
            index += 1
            continue

        if char == '"':
            if inside_quotes and index + 1 < length and content[index + 1] == '"':
                cell.append('"')
                index += 2
                continue
            inside_quotes = not inside_quotes
            index += 1
            continue

        if char == "," and not inside_quotes:
            row.append("".join(cell))
            cell = []
        elif char == "\n" and not inside_quotes:
            row.append("".join(cell))
            rows.append(row)
            row = []
            cell = []
        else:
            cell.append(char)
        index += 1

    if inside_quotes:
        raise MalformedInputError("Unterminated quoted value in CSV content.")

    if cell or row:
        row.append("".join(cell))
        rows.append(row)

    return [r for r in rows if any(value.strip() for value in r)]


def write_csv(rows, columns):
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell_text(row.get(column)) for column in columns])
    return output.getvalue()


def _cell_text(value):
    if value is None:
        return ""
    return str(value)


def parse_number(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    text = str(value).strip()
    if not text or text.lower() == "nan":
        return None

    if text.endswith("%"):
        text = text[:-1]

    cleaned = re.sub(r"[^0-9,.\-]", "", text)
    # Whichever separator comes last is the decimal point; a lone comma is European style.
    if "," in cleaned and cleaned.rfind(",") > cleaned.rfind("."):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    try:
        number = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_dataset_headers(content):
    rows = parse_csv(content)
    if not rows:
        return []
    return [header.strip() for header in rows[0] if header.strip()]


def parse_dataset(content):
    rows = parse_csv(content)
    if not rows:
        return {"headers": [], "rows": []}

    headers = rows[0]
    records = []
    for raw in rows[1:]:
        record = {}
        for index, header in enumerate(headers):
            record[header] = raw[index] if index < len(raw) else ""
        records.append(record)
    return {"headers": headers, "rows": records}


def parse_csv_objects(content):
    rows = parse_csv(content)
    if not rows:
        return []

    headers = [header.strip() for header in rows[0]]
    entries = []
    for raw in rows[1:]:
        entries.append({header: (raw[index] if index < len(raw) else "") for index, header in enumerate(headers)})
    return entries


def normalize_data_type(value):
    normalized = (value or "").strip().lower() if isinstance(value, str) else ""
    return normalized if normalized in DATA_TYPES else DEFAULT_DATA_TYPE


def normalize_higher_is(value):
    normalized = (value or "").strip().lower() if isinstance(value, str) else ""
    return normalized if normalized in HIGHER_IS_VALUES else DEFAULT_HIGHER_IS


def _text_field(entry, key):
    value = entry.get(key)
    if not isinstance(value, str):
        return None
    return value.strip()


def _dictionary_record(entry):
    metric = _text_field(entry, "metric")
    if not metric:
        return None
    return {
        "metric": metric,
        "what_it_is": _text_field(entry, "what_it_is") or "",
        "data_type": normalize_data_type(entry.get("data_type")),
        "higher_is": normalize_higher_is(entry.get("higher_is")),
        "units_or_range": _text_field(entry, "units_or_range"),
    }


def parse_dictionary_csv(content):
    records = (_dictionary_record(entry) for entry in parse_csv_objects(content))
    return [record for record in records if record is not None]


def parse_dictionary_json(content):
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise MalformedInputError(f"Dictionary JSON could not be parsed: {exc.msg}.") from exc

    if not isinstance(parsed, list):
        raise MalformedInputError("Dictionary JSON must be an array of column entries.")

    records = (_dictionary_record(entry) for entry in parsed if isinstance(entry, dict))
    return [record for record in records if record is not None]


def load_dictionary(filename, content):
    if (filename or "").lower().endswith(".json"):
        return parse_dictionary_json(content)
    return parse_dictionary_csv(content)


def _stat_label(row):
    for key, value in row.items():
        if key.lower() == "stat":
            return (value or "").strip().lower()
    return ""


def parse_summary_csv(content):
    stats = {}
    for row in parse_csv_objects(content):
        label = _stat_label(row)
        if label in MEAN_LABELS:
            slot = "mean"
        elif label in MEDIAN_LABELS:
            slot = "median"
        else:
            continue

        for key, raw_value in row.items():
            if key.lower() == "stat":
                continue
            number = parse_number(raw_value)
            if number is None:
                continue
            stats.setdefault(key, {})[slot] = number
    return stats
