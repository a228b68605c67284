import os
import re
from pathlib import Path


def decode_upload_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def safe_file_name(file_name):
    return re.sub(r"[^a-zA-Z0-9._-]", "_", file_name or "upload")


def guess_mime_type(file_name):
    return "application/json" if (file_name or "").lower().endswith(".json") else "text/csv"


def save_upload(upload_root, slot, file_id, file_name, file_bytes):
    """Write an uploaded file below ``upload_root/<slot>`` and return its relative path."""
    target_dir = Path(upload_root) / slot
    target_dir.mkdir(parents=True, exist_ok=True)
    target_path = target_dir / f"{file_id}-{safe_file_name(file_name)}"
    target_path.write_bytes(file_bytes)
    return os.path.relpath(target_path, upload_root)


def read_upload(upload_root, relative_path):
    file_bytes = (Path(upload_root) / relative_path).read_bytes()
    return decode_upload_bytes(file_bytes)


def delete_upload(upload_root, relative_path):
    try:
        os.remove(Path(upload_root) / relative_path)
    except FileNotFoundError:
        return False
    return True
