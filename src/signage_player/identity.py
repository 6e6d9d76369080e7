"""Device identity persistence.

The identity is written to two independent places: a ``dbm`` key-value
store (primary) and a plain JSON backup file. Losing one of them does not
force the device to pair again; when the primary is empty the backup is
read and mirrored back into the primary.
"""

from __future__ import annotations

import dbm
import json
import logging
from pathlib import Path

from signage_player.models import DeviceIdentity

log = logging.getLogger(__name__)

STORAGE_KEY = "client_data"


class DeviceStore:
    """Dual-store persistence for the device identity."""

    def __init__(self, store_path: str | Path, backup_path: str | Path) -> None:
        self.store_path = Path(store_path)
        self.backup_path = Path(backup_path)

    # ----- Primary (key-value) -----

    def _exists(self) -> bool:
        return dbm.whichdb(str(self.store_path)) is not None

    def _read_primary(self) -> dict | None:
        if not self._exists():
            return None
        try:
            with dbm.open(str(self.store_path), "r") as db:
                raw = db.get(STORAGE_KEY)
        except dbm.error as exc:
            log.error("Failed to read identity store: %s", exc)
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            log.error("Identity store is corrupt: %s", exc)
            return None
        return data if isinstance(data, dict) else None

    def _write_primary(self, text: str) -> bool:
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            with dbm.open(str(self.store_path), "c") as db:
                db[STORAGE_KEY] = text
            return True
        except dbm.error as exc:
            log.error("Identity store save failed: %s", exc)
            return False

    # ----- Backup (file) -----

    def _read_backup(self) -> dict | None:
        try:
            if not self.backup_path.is_file():
                return None
            data = json.loads(self.backup_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.error("Failed to read identity backup: %s", exc)
            return None
        return data if isinstance(data, dict) else None

    def _write_backup(self, text: str) -> bool:
        try:
            self.backup_path.parent.mkdir(parents=True, exist_ok=True)
            self.backup_path.write_text(text, encoding="utf-8")
            return True
        except OSError as exc:
            log.error("Identity backup save failed: %s", exc)
            return False

    # ----- Public API -----

    def load(self) -> DeviceIdentity | None:
        """Return the saved identity, consulting the backup only if the primary is empty."""
        data = self._read_primary()
        if data is not None:
            log.info("Loaded credentials from identity store")
            return DeviceIdentity.from_json(data)

        data = self._read_backup()
        if data is None:
            log.info("No saved credentials, device will pair")
            return None

        log.info("Loaded credentials from backup file, restoring identity store")
        self._write_primary(json.dumps(data))
        return DeviceIdentity.from_json(data)

    def save(self, identity: DeviceIdentity) -> None:
        """Write the identity to both stores. Each write is best-effort."""
        text = json.dumps(identity.to_json())
        primary = self._write_primary(text)
        backup = self._write_backup(text)
        log.info("Saved credentials (store=%s, backup=%s)", primary, backup)

    def clear(self) -> None:
        """Forget the identity in both stores."""
        log.info("Clearing credentials")
        try:
            if self._exists():
                with dbm.open(str(self.store_path), "w") as db:
                    if STORAGE_KEY in db:
                        del db[STORAGE_KEY]
        except dbm.error as exc:
            log.error("Failed to clear identity store: %s", exc)
        try:
            self.backup_path.unlink(missing_ok=True)
        except OSError as exc:
            log.error("Failed to clear identity backup: %s", exc)
