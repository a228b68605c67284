import base64
import binascii
import os
import re
import uuid
from functools import wraps

from flask import Flask, Response, g, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .analysis import apply_analysis, build_analysis_chain, list_methods
from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .filters import apply_filters, describe_operator, get_available_operators, validate_filter
from .parsers import MalformedInputError, write_csv
from .presets import create_preset, list_presets, parse_preset_request, sort_authors, utc_timestamp
from .storage import delete_upload, guess_mime_type, read_upload, save_upload
from .workspace import UPLOAD_SLOTS, WorkspaceState


class DatabaseInitError(RuntimeError):
    """Raised when the workspace database cannot be opened or migrated."""


USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
PNG_DATA_URL_PREFIX = "data:image/png;base64,"
MAX_UPLOAD_DESCRIPTION_LENGTH = 500


def validate_registration(payload, max_image_bytes):
    name = (payload.get("name") or "").strip()
    username = (payload.get("username") or "").strip()
    password = payload.get("password") or ""
    image = payload.get("image") or None

    if len(name) < 2:
        return None, "Name must be at least 2 characters long", 400
    if len(name) > 80:
        return None, "Name must be 80 characters or less", 400
    if len(username) < 3:
        return None, "Username must be at least 3 characters long", 400
    if len(username) > 32:
        return None, "Username must be 32 characters or less", 400
    if not USERNAME_PATTERN.match(username):
        return None, "Username can only contain letters, numbers, and underscores.", 400
    if len(password) < 8:
        return None, "Password must be at least 8 characters long", 400

    if image is not None:
        if not isinstance(image, str) or not image.startswith(PNG_DATA_URL_PREFIX):
            return None, "Profile image must be a PNG image.", 400
        try:
            image_bytes = base64.b64decode(image[len(PNG_DATA_URL_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            return None, "Profile image could not be processed.", 400
        if len(image_bytes) > max_image_bytes:
            return None, "Profile image must be smaller than 2MB.", 413

    return {"name": name, "username": username.lower(), "password": password, "image": image}, None, None


def user_payload(row):
    return {"id": row["id"], "username": row["username"], "name": row["name"], "image": row["image"]}


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "wallet_workspace.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        UPLOAD_FOLDER=os.path.join(app.instance_path, "uploads"),
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,
        MAX_PROFILE_IMAGE_BYTES=2 * 1024 * 1024,
        PREVIEW_ROW_LIMIT=200,
        STAFF_ACCESS_CODE=os.environ.get("STAFF_ACCESS_CODE"),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def db_config():
        return parse_database_config(app.config["DATABASE"], app.config.get("DATABASE_URL") or "")

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(db_config())
            except DB_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open database {db_config()['database_name']}: {exc}"
                print(f"[DB ERROR] {message}")
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(db_config())
            app.config["DB_INIT_ERROR"] = None
        except DB_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {db_config()['database_name']}: {exc}"
            print(f"[DB INIT ERROR] {message}")
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(db_config()))
        except DB_ERRORS + (RuntimeError,) as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def json_error(message, status=400):
        return jsonify({"error": message}), status

    @app.errorhandler(MalformedInputError)
    def handle_malformed_input(exc):
        return json_error(str(exc), 400)

    @app.errorhandler(413)
    def handle_too_large(_exc):
        return json_error("Upload is too large.", 413)

    def request_payload():
        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict()
        return payload

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return json_error("Authentication required.", 401)
            return view(**kwargs)

        return wrapped_view

    def current_author():
        return {"id": g.user["id"], "name": g.user["name"], "image": g.user["image"]}

    @app.before_request
    def load_logged_in_user():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            message = app.config.get("DB_INIT_ERROR") or "Database initialization failed."
            return json_error(message, 500)

        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

    def get_upload(upload_id):
        return get_db().execute("SELECT * FROM upload_entries WHERE id = ?", (upload_id,)).fetchone()

    def select_upload(db, user_id, slot, upload_id):
        db.execute(
            """
            INSERT INTO upload_selections (id, button_key, upload_id, user_id, selected_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id, button_key)
            DO UPDATE SET upload_id = excluded.upload_id, selected_at = excluded.selected_at
            """,
            (uuid.uuid4().hex, slot, upload_id, user_id, utc_timestamp()),
        )

    def store_upload(db, slot, file_name, file_bytes, description=None, commit=True):
        upload_id = uuid.uuid4().hex
        file_path = save_upload(app.config["UPLOAD_FOLDER"], slot, upload_id, file_name, file_bytes)
        uploaded_at = utc_timestamp()
        db.execute(
            """
            INSERT INTO upload_entries (id, button_key, file_name, description, file_path, uploaded_by_user_id, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (upload_id, slot, file_name, description, file_path, g.user["id"], uploaded_at),
        )
        select_upload(db, g.user["id"], slot, upload_id)
        if commit:
            db.commit()
        app.logger.info("Stored upload id=%s slot=%s user_id=%s file=%s", upload_id, slot, g.user["id"], file_name)
        record = {
            "id": upload_id,
            "buttonKey": slot,
            "fileName": file_name,
            "description": description,
            "uploadedAt": uploaded_at,
            "uploadedBy": g.user["id"],
        }
        return record, file_path

    def selected_uploads(user_id):
        rows = get_db().execute(
            """
            SELECT s.button_key, e.id, e.file_name, e.file_path
            FROM upload_selections s
            JOIN upload_entries e ON e.id = s.upload_id
            WHERE s.user_id = ?
            """,
            (user_id,),
        ).fetchall()
        return {row["button_key"]: row for row in rows}

    def load_workspace(user_id):
        state = WorkspaceState()
        selections = selected_uploads(user_id)
        for slot in UPLOAD_SLOTS:
            selection = selections.get(slot)
            if selection is None:
                continue
            try:
                content = read_upload(app.config["UPLOAD_FOLDER"], selection["file_path"])
            except OSError as exc:
                app.logger.warning("Unable to read upload id=%s slot=%s: %s", selection["id"], slot, exc)
                state.errors[slot] = "Unable to read the upload file."
                continue
            if content is None:
                state.errors[slot] = "Could not read file encoding. Please re-save as UTF-8."
                continue
            if not state.register_file(slot, selection["file_name"], content):
                app.logger.warning("Upload id=%s rejected for slot=%s: %s", selection["id"], slot, state.errors[slot])
        return state

    def bind_columns(state, definitions):
        # Dictionary metrics are trimmed while row keys keep the raw header text.
        bound = []
        unknown = set()
        for definition in definitions:
            row_key = state.row_key(definition["columnKey"])
            if row_key is None:
                unknown.add(definition["columnKey"])
            else:
                bound.append({**definition, "columnKey": row_key})
        if unknown:
            raise MalformedInputError(f"Unknown column(s): {', '.join(sorted(unknown))}.")
        return bound

    def parse_filters(raw_filters):
        if raw_filters is None:
            return []
        if not isinstance(raw_filters, list):
            raise MalformedInputError("Filters must be a list.")
        return [validate_filter(item) for item in raw_filters]

    def csv_download(rows, columns, filename):
        return Response(
            write_csv(rows, columns),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    @app.post("/api/auth/register")
    def register():
        payload = request_payload()
        if not isinstance(payload, dict):
            return json_error("Invalid request body.")

        staff_code = app.config.get("STAFF_ACCESS_CODE")
        if staff_code and payload.get("staffCode") != staff_code:
            return json_error("Invalid access code.", 401)

        data, error, status = validate_registration(payload, app.config["MAX_PROFILE_IMAGE_BYTES"])
        if error:
            return json_error(error, status)

        db = get_db()
        existing = db.execute("SELECT id FROM users WHERE username = ?", (data["username"],)).fetchone()
        if existing is not None:
            return json_error("Username is already taken.", 409)

        user_id = uuid.uuid4().hex
        db.execute(
            "INSERT INTO users (id, username, password_hash, name, image, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, data["username"], generate_password_hash(data["password"]), data["name"], data["image"], utc_timestamp()),
        )
        db.commit()
        app.logger.info("Registered user id=%s username=%s", user_id, data["username"])
        user = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return jsonify({"user": user_payload(user)}), 201

    @app.post("/api/auth/login")
    def login():
        payload = request_payload()
        if not isinstance(payload, dict):
            return json_error("Invalid request body.")
        username = (payload.get("username") or "").strip().lower()
        password = payload.get("password") or ""

        user = get_db().execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        if user is None or not check_password_hash(user["password_hash"], password):
            return json_error("Incorrect username or password.", 401)

        session.clear()
        session["user_id"] = user["id"]
        return jsonify({"user": user_payload(user)})

    @app.post("/api/auth/logout")
    def logout():
        session.clear()
        return jsonify({"ok": True})

    @app.get("/api/auth/session")
    def current_session():
        return jsonify({"user": user_payload(g.user) if g.user is not None else None})

    @app.get("/api/accounts")
    def list_accounts():
        rows = get_db().execute(
            "SELECT id, name, image, created_at FROM users ORDER BY created_at DESC"
        ).fetchall()
        accounts = [
            {"id": row["id"], "name": row["name"], "image": row["image"], "createdAt": row["created_at"]}
            for row in rows
        ]
        return jsonify({"accounts": accounts})

    @app.post("/api/uploads")
    @login_required
    def create_upload():
        file = request.files.get("file")
        if file is None or not file.filename:
            return json_error("File upload missing.")

        slot = (request.form.get("buttonKey") or "").strip()
        if not slot:
            return json_error("Upload target is required")
        if slot not in UPLOAD_SLOTS:
            return json_error("Unsupported upload slot.")

        description = (request.form.get("description") or "").strip() or None
        if description and len(description) > MAX_UPLOAD_DESCRIPTION_LENGTH:
            return json_error(f"Description must be {MAX_UPLOAD_DESCRIPTION_LENGTH} characters or less.")

        record, _file_path = store_upload(get_db(), slot, file.filename, file.read(), description)
        state = load_workspace(g.user["id"])
        return jsonify({
            "upload": record,
            "selectedUploadId": record["id"],
            "slotError": state.errors[slot],
        }), 201

    @app.get("/api/uploads")
    def list_uploads():
        scope = request.args.get("scope", "all")
        button_key = request.args.get("buttonKey")
        author_filter = request.args.get("userId")

        query = """
            SELECT e.id, e.file_name, e.description, e.button_key, e.uploaded_at,
                   u.id AS user_id, u.name AS user_name, u.image AS user_image
            FROM upload_entries e
            JOIN users u ON u.id = e.uploaded_by_user_id
        """
        where_parts = []
        params = []
        if scope == "button" and button_key:
            where_parts.append("e.button_key = ?")
            params.append(button_key)
        if author_filter and author_filter != "all":
            where_parts.append("e.uploaded_by_user_id = ?")
            params.append(author_filter)
        if where_parts:
            query += " WHERE " + " AND ".join(where_parts)
        query += " ORDER BY e.uploaded_at DESC"

        db = get_db()
        rows = db.execute(query, tuple(params)).fetchall()

        selected = {}
        if g.user is not None:
            selection_rows = db.execute(
                "SELECT button_key, upload_id FROM upload_selections WHERE user_id = ?",
                (g.user["id"],),
            ).fetchall()
            selected = {row["button_key"]: row["upload_id"] for row in selection_rows}

        uploads = []
        authors = {}
        for row in rows:
            uploads.append({
                "id": row["id"],
                "fileName": row["file_name"],
                "description": row["description"],
                "buttonKey": row["button_key"],
                "uploadedAt": row["uploaded_at"],
                "userId": row["user_id"],
                "userName": row["user_name"],
                "userImage": row["user_image"],
                "isSelected": selected.get(row["button_key"]) == row["id"],
            })
            authors.setdefault(row["user_id"], {"id": row["user_id"], "name": row["user_name"], "image": row["user_image"]})

        return jsonify({"uploads": uploads, "selected": selected, "authors": sort_authors(list(authors.values()))})

    @app.patch("/api/uploads")
    @login_required
    def update_upload_selection():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return json_error("Invalid request body.")

        slot = payload.get("buttonKey")
        upload_id = payload.get("uploadId")
        select = payload.get("select")
        if not isinstance(slot, str) or not slot:
            return json_error("Upload target is required")
        if not isinstance(select, bool):
            return json_error("Select must be true or false.")

        db = get_db()
        if select:
            if not upload_id:
                return json_error("Upload ID is required to select a file.")
            target = db.execute(
                "SELECT id FROM upload_entries WHERE id = ? AND button_key = ?",
                (upload_id, slot),
            ).fetchone()
            if target is None:
                return json_error("Upload not found for this slot.", 404)
            select_upload(db, g.user["id"], slot, target["id"])
            db.commit()
            return jsonify({"selectedUploadId": target["id"]})

        db.execute(
            "DELETE FROM upload_selections WHERE user_id = ? AND button_key = ?",
            (g.user["id"], slot),
        )
        db.commit()
        return jsonify({"selectedUploadId": None})

    @app.get("/api/uploads/<upload_id>")
    @login_required
    def get_upload_content(upload_id):
        record = get_upload(upload_id)
        if record is None:
            return json_error("Upload not found.", 404)

        try:
            content = read_upload(app.config["UPLOAD_FOLDER"], record["file_path"])
        except OSError as exc:
            app.logger.warning("Failed to read upload id=%s: %s", upload_id, exc)
            return json_error("Unable to read the upload file.", 500)

        return jsonify({
            "upload": {
                "id": record["id"],
                "buttonKey": record["button_key"],
                "fileName": record["file_name"],
                "description": record["description"],
                "uploadedAt": record["uploaded_at"],
            },
            "content": content,
            "mimeType": guess_mime_type(record["file_name"]),
        })

    @app.delete("/api/uploads/<upload_id>")
    @login_required
    def delete_upload_entry(upload_id):
        record = get_upload(upload_id)
        if record is None:
            return json_error("Upload not found.", 404)
        if record["uploaded_by_user_id"] != g.user["id"]:
            return json_error("Only the uploader can delete this file.", 403)

        if not delete_upload(app.config["UPLOAD_FOLDER"], record["file_path"]):
            app.logger.warning("Upload file already missing for id=%s", upload_id)

        db = get_db()
        db.execute("DELETE FROM upload_selections WHERE upload_id = ?", (upload_id,))
        db.execute("DELETE FROM upload_entries WHERE id = ?", (upload_id,))
        db.commit()
        app.logger.info("Deleted upload id=%s user_id=%s", upload_id, g.user["id"])
        return jsonify({"success": True})

    @app.get("/api/workspace")
    @login_required
    def get_workspace():
        return jsonify(load_workspace(g.user["id"]).to_dict())

    @app.get("/api/filters/operators")
    def filter_operators():
        data_type = request.args.get("dataType", "text")
        operators = get_available_operators(data_type)
        return jsonify({
            "dataType": data_type,
            "operators": [{"operator": op, "label": describe_operator(op)} for op in operators],
        })

    def run_filters():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise MalformedInputError("Invalid request body.")
        filters = parse_filters(payload.get("filters"))

        state = load_workspace(g.user["id"])
        rows = state.require_rows()
        return state, filters, apply_filters(rows, bind_columns(state, filters))

    @app.post("/api/filters/run")
    @login_required
    def run_filters_endpoint():
        state, filters, matched = run_filters()
        return jsonify({
            "filters": filters,
            "columns": state.dataset_headers,
            "rowCount": len(matched),
            "totalRows": len(state.dataset_rows),
            "rows": matched[: app.config["PREVIEW_ROW_LIMIT"]],
        })

    @app.post("/api/filters/export")
    @login_required
    def export_filtered_rows():
        state, _filters, matched = run_filters()
        return csv_download(matched, state.dataset_headers, "filtered-accounts.csv")

    @app.get("/api/analysis/methods")
    def analysis_methods():
        return jsonify({"methods": list_methods()})

    def run_analysis():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise MalformedInputError("Invalid request body.")
        chain = build_analysis_chain(payload.get("chain"))
        filters = parse_filters(payload.get("filters"))

        state = load_workspace(g.user["id"])
        rows = state.require_rows()
        bound_chain = {**chain, "steps": bind_columns(state, chain["steps"])}
        filtered = apply_filters(rows, bind_columns(state, filters))
        return chain, apply_analysis(filtered, state.dataset_headers, bound_chain)

    @app.post("/api/analysis/run")
    @login_required
    def run_analysis_endpoint():
        chain, outcome = run_analysis()
        app.logger.info("Analysis %r ran over %s row(s) for user_id=%s", chain["resultName"], len(outcome["rows"]), g.user["id"])
        return jsonify({
            "chain": chain,
            "columns": outcome["columns"],
            "rowCount": len(outcome["rows"]),
            "rows": outcome["rows"][: app.config["PREVIEW_ROW_LIMIT"]],
            "result": outcome["result"][: app.config["PREVIEW_ROW_LIMIT"]],
        })

    @app.post("/api/analysis/export")
    @login_required
    def export_analysis_rows():
        chain, outcome = run_analysis()
        return csv_download(outcome["rows"], outcome["columns"], f"{chain['resultName'] or 'analysis'}-results.csv")

    def presets_listing(kind):
        return jsonify(list_presets(get_db(), kind, request.args.get("userId")))

    def presets_create(kind):
        payload = request.get_json(silent=True)
        if payload is None:
            return json_error("Invalid request body.")
        preset_type, name, body = parse_preset_request(kind, payload)
        record = create_preset(get_db(), kind, preset_type, name, body, current_author())
        app.logger.info("Saved %s %s preset id=%s user_id=%s", kind, preset_type, record["id"], g.user["id"])
        key = "preset" if preset_type == "single" else "chain"
        return jsonify({key: record}), 201

    @app.get("/api/filter-presets")
    def list_filter_presets():
        return presets_listing("filter")

    @app.post("/api/filter-presets")
    @login_required
    def create_filter_preset():
        return presets_create("filter")

    @app.get("/api/analysis-presets")
    def list_analysis_presets():
        return presets_listing("analysis")

    @app.post("/api/analysis-presets")
    @login_required
    def create_analysis_preset():
        return presets_create("analysis")

    @app.get("/api/workspace/preset")
    @login_required
    def export_workspace_preset():
        embed = request.args.get("embed") in ("1", "true", "yes")
        selections = selected_uploads(g.user["id"])
        preset = {slot: (selections[slot]["id"] if slot in selections else None) for slot in UPLOAD_SLOTS}

        if embed:
            files = {}
            for slot, selection in selections.items():
                try:
                    content = read_upload(app.config["UPLOAD_FOLDER"], selection["file_path"])
                except OSError as exc:
                    app.logger.warning("Skipping unreadable upload id=%s in preset export: %s", selection["id"], exc)
                    continue
                files[slot] = {"id": selection["id"], "fileName": selection["file_name"], "content": content}
            preset["files"] = files

        return Response(
            jsonify(preset).get_data(),
            mimetype="application/json",
            headers={"Content-Disposition": "attachment; filename=preset.json"},
        )

    @app.post("/api/workspace/preset")
    @login_required
    def import_workspace_preset():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return json_error("Invalid request body.")

        files = payload.get("files") or {}
        if not isinstance(files, dict):
            return json_error("Preset files must be an object keyed by slot.")

        db = get_db()
        embedded_files = {}
        targets = {}
        for slot in UPLOAD_SLOTS:
            embedded = files.get(slot)
            if isinstance(embedded, dict) and isinstance(embedded.get("content"), str):
                embedded_files[slot] = embedded
                continue
            if slot not in payload:
                continue
            upload_id = payload[slot]
            if upload_id is None:
                targets[slot] = None
                continue
            target = db.execute(
                "SELECT id FROM upload_entries WHERE id = ? AND button_key = ?",
                (upload_id, slot),
            ).fetchone()
            if target is None:
                return json_error(f"Upload {upload_id} not found for the {slot} slot.", 404)
            targets[slot] = target["id"]

        written = []
        try:
            for slot, embedded in embedded_files.items():
                file_name = embedded.get("fileName") or f"{slot}.csv"
                _record, file_path = store_upload(
                    db,
                    slot,
                    file_name,
                    embedded["content"].encode("utf-8"),
                    "Imported from workspace preset",
                    commit=False,
                )
                written.append(file_path)
            for slot, upload_id in targets.items():
                if upload_id is None:
                    db.execute(
                        "DELETE FROM upload_selections WHERE user_id = ? AND button_key = ?",
                        (g.user["id"], slot),
                    )
                else:
                    select_upload(db, g.user["id"], slot, upload_id)
            db.commit()
        except DB_ERRORS + (OSError,):
            db.rollback()
            for file_path in written:
                delete_upload(app.config["UPLOAD_FOLDER"], file_path)
            app.logger.warning("Workspace preset import failed for user_id=%s, removed %s file(s)", g.user["id"], len(written))
            raise

        state = load_workspace(g.user["id"])
        app.logger.info("Imported workspace preset for user_id=%s missing=%s", g.user["id"], state.missing)
        selected = {slot: selection["id"] for slot, selection in selected_uploads(g.user["id"]).items()}
        return jsonify({
            "selected": selected,
            "missing": state.missing,
            "errors": state.errors,
            "isReady": state.is_ready,
        })

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    app.load_workspace = load_workspace
    return app
