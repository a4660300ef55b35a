"""Export and import of history as (optionally encrypted) JSONL."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from clipkeeper.crypto import decrypt_line, encrypt_line, is_enabled

logger = logging.getLogger("clipkeeper.backup")

EXPORT_FORMAT = "clipkeeper-jsonl-v1"


def export_entries(store, filepath) -> Dict[str, Any]:
    """Write every entry to ``filepath``, one JSON object per line."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    encrypted = is_enabled()
    exported_at = datetime.now(timezone.utc).isoformat()

    count = 0
    # Restricted permissions: exports hold clipboard content
    fd = os.open(str(filepath), os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        header = {"format": EXPORT_FORMAT, "exported_at": exported_at}
        f.write(encrypt_line(json.dumps(header)) + "\n")
        for entry in store.iter_entries():
            f.write(encrypt_line(json.dumps(entry.to_dict(), ensure_ascii=False)) + "\n")
            count += 1

    logger.info("Exported %d entries to %s", count, filepath)
    return {
        "filepath": str(filepath),
        "entry_count": count,
        "encrypted": encrypted,
        "exported_at": exported_at,
    }


def import_entries(store, filepath, clear_existing: bool = False) -> Dict[str, Any]:
    """Re-save entries from an export. Imported entries get fresh ids."""
    filepath = Path(filepath)
    if filepath.is_symlink():
        raise ValueError("Import file must not be a symlink")

    if clear_existing:
        store.clear()

    imported = 0
    skipped = 0
    with open(filepath, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(decrypt_line(line))
            except ValueError as e:
                # json.JSONDecodeError and failed decryption are both ValueError
                logger.debug("Skipping line %d: %s", line_num, e)
                skipped += 1
                continue
            if not isinstance(record, dict):
                logger.debug("Skipping line %d: not a JSON object", line_num)
                skipped += 1
                continue
            if "format" in record and "content" not in record:
                continue
            try:
                store.save(
                    content=record["content"],
                    content_type=record["content_type"],
                    timestamp=record["timestamp"],
                    source_app=record.get("source_app"),
                    metadata=record.get("metadata"),
                )
            except (KeyError, TypeError) as e:
                logger.debug("Skipping line %d: missing field %s", line_num, e)
                skipped += 1
                continue
            imported += 1

    logger.info("Imported %d entries from %s (%d skipped)", imported, filepath, skipped)
    return {"filepath": str(filepath), "imported": imported, "skipped": skipped}
