import json
import uuid
from datetime import datetime, timezone

from .analysis import build_analysis_chain, validate_step
from .filters import validate_filter
from .parsers import MalformedInputError


MAX_PRESET_NAME_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 500

# kind -> (single table, chain table, chain payload column, chain response key)
PRESET_TABLES = {
    "filter": ("filter_presets", "filter_preset_chains", "templates_json", "templates"),
    "analysis": ("analysis_presets", "analysis_preset_chains", "chain_json", "chain"),
}


def utc_timestamp():
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def validate_preset_name(value):
    name = value.strip() if isinstance(value, str) else ""
    if not name:
        raise MalformedInputError("Preset name is required.")
    if len(name) > MAX_PRESET_NAME_LENGTH:
        raise MalformedInputError(f"Preset name must be {MAX_PRESET_NAME_LENGTH} characters or less.")
    return name


def _check_description(template):
    description = template.get("description")
    if isinstance(description, str) and len(description) > MAX_DESCRIPTION_LENGTH:
        raise MalformedInputError(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less.")


def filter_template(payload):
    if isinstance(payload, dict):
        _check_description(payload)
    definition = validate_filter(payload)
    definition.pop("id")
    return definition


def analysis_template(payload):
    if isinstance(payload, dict):
        _check_description(payload)
    return validate_step(payload)


def parse_preset_request(kind, payload):
    """Validate a create request for a single preset or a chain.

    Returns ``(preset_type, name, body)`` where body is the normalized
    template, template list or analysis chain.
    """
    if not isinstance(payload, dict):
        raise MalformedInputError("Invalid request body.")

    preset_type = payload.get("type")
    if preset_type not in ("single", "chain"):
        raise MalformedInputError("Preset type must be 'single' or 'chain'.")
    name = validate_preset_name(payload.get("name"))

    if preset_type == "single":
        template = payload.get("template")
        if template is None:
            raise MalformedInputError("Template is required.")
        body = filter_template(template) if kind == "filter" else analysis_template(template)
        return preset_type, name, body

    if kind == "filter":
        templates = payload.get("templates")
        if not isinstance(templates, list) or not templates:
            raise MalformedInputError("A filter chain needs at least one template.")
        return preset_type, name, [filter_template(template) for template in templates]

    chain = payload.get("chain")
    if chain is None:
        raise MalformedInputError("Chain is required.")
    return preset_type, name, build_analysis_chain(chain)


def map_author(row):
    return {"id": row["author_id"], "name": row["author_name"], "image": row["author_image"]}


def sort_authors(authors):
    named = sorted((a for a in authors if a["name"]), key=lambda a: a["name"].lower())
    unnamed = [a for a in authors if not a["name"]]
    return named + unnamed


def _select_records(db, table, payload_column, author_id):
    query = f"""
        SELECT p.id, p.name, p.{payload_column} AS payload, p.created_at,
               u.id AS author_id, u.name AS author_name, u.image AS author_image
        FROM {table} p
        JOIN users u ON u.id = p.created_by_user_id
    """
    params = []
    if author_id and author_id != "all":
        query += " WHERE p.created_by_user_id = ?"
        params.append(author_id)
    query += " ORDER BY p.created_at DESC"
    return db.execute(query, tuple(params)).fetchall()


def list_presets(db, kind, author_id=None):
    single_table, chain_table, chain_column, chain_key = PRESET_TABLES[kind]

    presets = [
        {
            "id": row["id"],
            "name": row["name"],
            "template": json.loads(row["payload"]),
            "createdAt": row["created_at"],
            "createdBy": map_author(row),
        }
        for row in _select_records(db, single_table, "template_json", author_id)
    ]
    chains = [
        {
            "id": row["id"],
            "name": row["name"],
            chain_key: json.loads(row["payload"]),
            "createdAt": row["created_at"],
            "createdBy": map_author(row),
        }
        for row in _select_records(db, chain_table, chain_column, author_id)
    ]

    authors = {}
    for record in presets + chains:
        authors[record["createdBy"]["id"]] = record["createdBy"]

    return {"presets": presets, "chains": chains, "authors": sort_authors(list(authors.values()))}


def create_preset(db, kind, preset_type, name, body, author):
    single_table, chain_table, chain_column, chain_key = PRESET_TABLES[kind]
    preset_id = uuid.uuid4().hex
    created_at = utc_timestamp()

    if preset_type == "single":
        table, column, key = single_table, "template_json", "template"
    else:
        table, column, key = chain_table, chain_column, chain_key

    db.execute(
        f"INSERT INTO {table} (id, name, {column}, created_by_user_id, created_at) VALUES (?, ?, ?, ?, ?)",
        (preset_id, name, json.dumps(body), author["id"], created_at),
    )
    db.commit()
    return {"id": preset_id, "name": name, key: body, "createdAt": created_at, "createdBy": author}
