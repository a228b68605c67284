from .parsers import MalformedInputError, load_dictionary, parse_dataset, parse_summary_csv


UPLOAD_SLOTS = ("dataset", "dictionary", "summary")


def merge_column_metadata(dictionary, dataset_columns, summary_stats):
    if dictionary is None:
        return None

    column_set = set(dataset_columns) if dataset_columns is not None else None
    merged = []
    for entry in dictionary:
        if column_set is not None and entry["metric"] not in column_set:
            continue
        stats = (summary_stats or {}).get(entry["metric"]) or {}
        merged.append({**entry, "average": stats.get("mean"), "median": stats.get("median")})
    return merged


def _dataset_from_text(filename, text):
    lower_name = (filename or "").lower()
    if not lower_name.endswith(".csv"):
        raise MalformedInputError("Only CSV datasets are supported at the moment.")
    dataset = parse_dataset(text)
    raw_headers = [header for header in dataset["headers"] if header.strip()]
    if not raw_headers:
        raise MalformedInputError("No columns detected in dataset.")
    return [header.strip() for header in raw_headers], raw_headers, dataset["rows"]


class WorkspaceState:
    """The three upload slots of a workspace and what is derived from them.

    A failed upload clears only its own slot; the merged column metadata is
    recomputed from the current slots every time it is read.
    """

    def __init__(self):
        self.dataset_columns = None
        # Row keys keep the header text exactly as uploaded.
        self.dataset_headers = None
        self.dataset_rows = None
        self.dictionary = None
        self.summary_stats = {}
        self.selected_files = {slot: None for slot in UPLOAD_SLOTS}
        self.errors = {slot: None for slot in UPLOAD_SLOTS}

    def register_file(self, slot, filename, text):
        if slot in self.errors:
            self.errors[slot] = None

        try:
            if slot == "dataset":
                self.dataset_columns, self.dataset_headers, self.dataset_rows = _dataset_from_text(filename, text)
            elif slot == "dictionary":
                records = load_dictionary(filename, text)
                if not records:
                    raise MalformedInputError("No columns detected in dictionary file.")
                self.dictionary = records
            elif slot == "summary":
                if not (filename or "").lower().endswith(".csv"):
                    raise MalformedInputError("Summary upload must be a CSV file.")
                stats = parse_summary_csv(text)
                if not stats:
                    raise MalformedInputError("No summary statistics found.")
                self.summary_stats = stats
            else:
                raise MalformedInputError("Unsupported upload slot.")
        except MalformedInputError as exc:
            if slot in UPLOAD_SLOTS:
                self.clear_slot(slot)
                self.errors[slot] = str(exc)
            else:
                raise
            return False

        self.selected_files[slot] = filename
        return True

    def clear_slot(self, slot):
        if slot == "dataset":
            self.dataset_columns = None
            self.dataset_headers = None
            self.dataset_rows = None
        elif slot == "dictionary":
            self.dictionary = None
        elif slot == "summary":
            self.summary_stats = {}
        self.selected_files[slot] = None

    @property
    def column_metadata(self):
        return merge_column_metadata(self.dictionary, self.dataset_columns, self.summary_stats)

    @property
    def missing(self):
        slots = []
        if self.dataset_columns is None:
            slots.append("dataset")
        if self.dictionary is None:
            slots.append("dictionary")
        if not self.summary_stats:
            slots.append("summary")
        return slots

    @property
    def is_ready(self):
        return not self.missing and bool(self.column_metadata)

    def column(self, column_key):
        for entry in self.column_metadata or []:
            if entry["metric"] == column_key:
                return entry
        return None

    def row_key(self, column_key):
        """Return the raw dataset header for a column name, trimmed or not."""
        if not self.dataset_headers or not isinstance(column_key, str):
            return None
        if column_key in self.dataset_headers:
            return column_key
        for header in self.dataset_headers:
            if header.strip() == column_key.strip():
                return header
        return None

    def require_rows(self):
        if self.dataset_rows is None:
            raise MalformedInputError("Upload a dataset before running filters or analysis.")
        return self.dataset_rows

    def to_dict(self):
        return {
            "datasetColumns": self.dataset_columns,
            "rowCount": len(self.dataset_rows) if self.dataset_rows is not None else 0,
            "dictionary": self.dictionary,
            "summaryStats": self.summary_stats,
            "columnMetadata": self.column_metadata,
            "selectedFiles": dict(self.selected_files),
            "errors": dict(self.errors),
            "missing": self.missing,
            "isReady": self.is_ready,
        }
