"""File-backed store for the categorized keyword reply table.

The table is a JSON object of categories (system_commands, flow_messages,
general_services, member_services, academic_services), each mapping a keyword to
reply text. Readers get the cached copy; every administrative write backs up the
current file, rewrites it, and reloads the cache.
"""

import copy
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("pustakabot.responses")

REQUIRED_CATEGORIES = ("system_commands", "flow_messages", "general_services")
DEFAULT_CATEGORIES = (
    "flow_messages",
    "system_commands",
    "general_services",
    "member_services",
    "academic_services",
)

ResponseTable = Dict[str, Dict[str, str]]


class ResponseTableError(ValueError):
    """Raised when an administrative write would leave the table unusable."""


class KeyExistsError(ResponseTableError):
    pass


class UnknownCategoryError(ResponseTableError):
    pass


def empty_table() -> ResponseTable:
    """Return the structure used when the backing file is missing or corrupt."""
    return {category: {} for category in DEFAULT_CATEGORIES}


def validate_table(data: object) -> bool:
    """Purpose: Check that a candidate table has every required category.
    Inputs/Outputs: Input is decoded JSON; output is True when it can be saved.
    Side Effects / State: Logs the first missing category.
    Dependencies: Uses REQUIRED_CATEGORIES; called by ResponseStore.save.
    Failure Modes: Non-dict input and non-dict categories return False.
    If Removed: A malformed admin save could wipe the menu and flow templates.
    Testing Notes: Drop "flow_messages" from a valid table and expect False.
    """
    if not isinstance(data, dict):
        return False
    for category in REQUIRED_CATEGORIES:
        if not isinstance(data.get(category), dict):
            logger.error("validation failed missing_category=%s", category)
            return False
    return True


class ResponseStore:
    """Cached access to the response table with backup-before-write semantics."""

    def __init__(self, path: Path, backup_dir: Optional[Path] = None) -> None:
        """Purpose: Initialize the store and load the table from disk.
        Inputs/Outputs: Inputs are the JSON path and an optional backup directory.
        Side Effects / State: Reads the file into the in-memory cache.
        Dependencies: Calls reload.
        Failure Modes: Missing or corrupt file yields an empty table (logged).
        If Removed: Static replies and flow templates have no source.
        Testing Notes: Point at a temp file and verify data() mirrors it.
        """
        self._path = path
        self._backup_dir = backup_dir or (path.parent / "backups")
        self._data: ResponseTable = empty_table()
        self.reload()

    @property
    def path(self) -> Path:
        return self._path

    def data(self) -> ResponseTable:
        """Return the cached table; callers must treat it as read-only."""
        return self._data

    def snapshot(self) -> ResponseTable:
        """Return a deep copy suitable for editing or serializing."""
        return copy.deepcopy(self._data)

    def reload(self) -> ResponseTable:
        """Purpose: Re-read the backing file into the cache.
        Inputs/Outputs: No inputs; returns the freshly loaded table.
        Side Effects / State: Replaces the cached table.
        Dependencies: Uses json.loads and Path.read_text.
        Failure Modes: OSError or JSONDecodeError keep an empty default table.
        If Removed: Admin edits only take effect after a restart.
        Testing Notes: Edit the file on disk, call reload, and verify new keys.
        """
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("failed to read response table path=%s error=%s", self._path, exc)
            self._data = empty_table()
            return self._data
        if not isinstance(data, dict):
            logger.error("response table is not an object path=%s", self._path)
            self._data = empty_table()
            return self._data
        self._data = {
            category: dict(entries) for category, entries in data.items() if isinstance(entries, dict)
        }
        return self._data

    def flow_message(self, key: str, default: str) -> str:
        """Return a flow template, falling back to the built-in default."""
        value = self._data.get("flow_messages", {}).get(key)
        return value if value else default

    def category(self, name: str) -> Dict[str, str]:
        return self._data.get(name, {})

    def save(self, data: ResponseTable) -> None:
        """Purpose: Replace the whole table after validation and backup.
        Inputs/Outputs: Input is the new table; no return value.
        Side Effects / State: Writes a backup copy, rewrites the file, reloads cache.
        Dependencies: Uses validate_table, create_backup, _write.
        Failure Modes: Raises ResponseTableError on invalid data; IO errors propagate.
        If Removed: The admin save endpoint cannot persist edits.
        Testing Notes: Save a valid table and verify a backup file appears.
        """
        data = dict(data)
        # Admin UIs may round-trip a synthetic row id.
        data.pop("id", None)
        if not validate_table(data):
            raise ResponseTableError("response table is missing required categories")
        self.create_backup()
        self._write(data)

    def add_key(self, category: str, key: str, value: str) -> str:
        """Purpose: Add one keyword reply, normalizing the key.
        Inputs/Outputs: Inputs are category, key, and reply text; returns the stored key.
        Side Effects / State: Backs up, writes, and reloads the table.
        Dependencies: Uses snapshot, create_backup, _write.
        Failure Modes: UnknownCategoryError or KeyExistsError for invalid requests.
        If Removed: Librarians cannot add keyword replies without editing JSON by hand.
        Testing Notes: Add "Wifi " and verify the stored key is "wifi".
        """
        current = self.snapshot()
        if category not in current:
            raise UnknownCategoryError(category)
        normalized_key = key.lower().strip()
        if normalized_key in current[category]:
            raise KeyExistsError(normalized_key)
        current[category][normalized_key] = value
        self.create_backup()
        self._write(current)
        return normalized_key

    def delete_key(self, category: str, key: str) -> None:
        """Remove a keyword reply; raises KeyError when it does not exist."""
        current = self.snapshot()
        if key not in current.get(category, {}):
            raise KeyError(key)
        del current[category][key]
        self._write(current)

    def create_backup(self) -> Optional[Path]:
        """Purpose: Copy the current file into the backup directory.
        Inputs/Outputs: No inputs; returns the backup path or None on failure.
        Side Effects / State: Creates the backup directory and a timestamped file.
        Dependencies: Uses shutil.copyfile.
        Failure Modes: IO errors are logged and return None so saves still proceed.
        If Removed: A bad admin edit cannot be rolled back.
        Testing Notes: Call twice and verify two distinct backup files.
        """
        if not self._path.exists():
            return None
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        target = self._backup_dir / f"responses-{stamp}.json"
        try:
            self._backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self._path, target)
        except OSError as exc:
            logger.error("backup failed path=%s error=%s", target, exc)
            return None
        logger.info("backup created path=%s", target.name)
        return target

    def _write(self, data: ResponseTable) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        self.reload()
