"""Versioned persistence for the personalized heart-rate model.

The engine talks to a small key-value port (:class:`KeyValueStore`).  The
session history is written twice, under a primary and a backup key, so a
corrupted primary copy can be recovered; if both are unreadable the history
is reset while the learned ratios (stored under their own key) survive.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from napsense.detection.models import SleepSession, ThresholdState

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

SCHEMA_VERSION_KEY = "hr_model.schema_version"
STATE_KEY = "hr_model.state"
SESSIONS_KEY = "hr_model.sessions"
BACKUP_SUFFIX = "_backup"
SESSIONS_BACKUP_KEY = SESSIONS_KEY + BACKUP_SUFFIX

# Schema v1 kept a single ratio under its own key.
LEGACY_THRESHOLD_KEY = "hr_model.threshold"


class SessionDecodeError(ValueError):
    """A stored session list could not be decoded."""


class KeyValueStore(Protocol):
    """Persistence port used by the engine."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# Store implementations
# ---------------------------------------------------------------------------


class MemoryStore:
    """In-process store; values must be JSON-compatible."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """All keys in one JSON document, rewritten atomically on every change."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Store file %s unreadable (%s); starting empty", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Store file %s is not a JSON object; starting empty", self.path)
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()


# ---------------------------------------------------------------------------
# Session codec
# ---------------------------------------------------------------------------


def encode_sessions(sessions: list[SleepSession]) -> str:
    return json.dumps([s.to_dict() for s in sessions])


def decode_sessions(blob: Any) -> list[SleepSession]:
    """Decode a stored session blob.

    Raises:
        SessionDecodeError: if the blob is not a list of valid session records.
    """
    try:
        raw = json.loads(blob) if isinstance(blob, (str, bytes)) else blob
        if not isinstance(raw, list):
            raise TypeError(f"expected a list, got {type(raw).__name__}")
        return [SleepSession.from_dict(r) for r in raw]
    except (TypeError, ValueError, KeyError) as e:
        raise SessionDecodeError(str(e)) from e


# ---------------------------------------------------------------------------
# Model store
# ---------------------------------------------------------------------------


class ModelStore:
    """Reads and writes the threshold model through a :class:`KeyValueStore`."""

    def __init__(
        self,
        store: KeyValueStore,
        night_classifier: Callable[[datetime], bool] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self._clock = clock
        # Used when migrating v1 sessions that lack a day/night flag.
        self._night_classifier = night_classifier or (lambda d: d.hour >= 22 or d.hour < 6)

    # -- threshold state ----------------------------------------------------

    def load_state(self) -> ThresholdState | None:
        raw = self.store.get(STATE_KEY)
        if raw is None:
            return None
        try:
            return ThresholdState.from_dict(raw)
        except (TypeError, ValueError, KeyError) as e:
            logger.warning("Stored threshold state unreadable (%s); using defaults", e)
            return None

    def save_state(self, state: ThresholdState) -> None:
        self.store.set(STATE_KEY, state.to_dict())

    # -- sessions -----------------------------------------------------------

    def load_sessions(self) -> list[SleepSession]:
        """Load the session history, recovering from the backup copy if needed."""
        blob = self.store.get(SESSIONS_KEY)
        if blob is None:
            return []
        try:
            sessions = decode_sessions(blob)
            logger.debug("Loaded %d sleep sessions", len(sessions))
            return sessions
        except SessionDecodeError as e:
            logger.warning("Sleep session history unreadable (%s); trying backup", e)
        return self._recover_sessions()

    def _recover_sessions(self) -> list[SleepSession]:
        backup = self.store.get(SESSIONS_BACKUP_KEY)
        if backup is not None:
            try:
                sessions = decode_sessions(backup)
            except SessionDecodeError as e:
                logger.warning("Backup session history also unreadable (%s)", e)
            else:
                logger.info("Restored %d sleep sessions from backup", len(sessions))
                self.save_sessions(sessions)
                return sessions

        logger.warning("Could not recover sleep sessions; history reset")
        self.store.remove(SESSIONS_KEY)
        self.store.remove(SESSIONS_BACKUP_KEY)
        return []

    def save_sessions(self, sessions: list[SleepSession]) -> None:
        blob = encode_sessions(sessions)
        self.store.set(SESSIONS_KEY, blob)
        self.store.set(SESSIONS_BACKUP_KEY, blob)

    def clear(self) -> None:
        for key in (STATE_KEY, SESSIONS_KEY, SESSIONS_BACKUP_KEY, LEGACY_THRESHOLD_KEY):
            self.store.remove(key)

    # -- migration ----------------------------------------------------------

    @property
    def schema_version(self) -> int:
        raw = self.store.get(SCHEMA_VERSION_KEY)
        if raw is None:
            # Nothing stored at all means a fresh install, not a v1 layout.
            has_data = any(
                self.store.get(k) is not None
                for k in (STATE_KEY, SESSIONS_KEY, LEGACY_THRESHOLD_KEY)
            )
            return 1 if has_data else CURRENT_SCHEMA_VERSION
        return int(raw)

    def migrate(self) -> bool:
        """Bring stored data up to :data:`CURRENT_SCHEMA_VERSION`.

        Returns True if a migration ran.  Failures are logged and never
        discard data; an unreadable history is left for the recovery path
        in :meth:`load_sessions`.
        """
        version = self.schema_version
        if version >= CURRENT_SCHEMA_VERSION:
            self.store.set(SCHEMA_VERSION_KEY, version)
            return False

        logger.info("Migrating heart-rate model data: v%d -> v%d",
                    version, CURRENT_SCHEMA_VERSION)
        if version < 2:
            try:
                self._migrate_to_v2()
            except Exception:
                logger.exception("Heart-rate model migration to v2 failed")

        self.store.set(SCHEMA_VERSION_KEY, CURRENT_SCHEMA_VERSION)
        return True

    def _add_night_flags(self, key: str) -> None:
        """v1 session records had no isNightSleep flag; derive it from the date."""
        blob = self.store.get(key)
        if blob is None:
            return
        raw = json.loads(blob) if isinstance(blob, (str, bytes)) else blob
        if not isinstance(raw, list):
            raise SessionDecodeError(f"{key}: expected a list")
        for record in raw:
            if "isNightSleep" not in record:
                record["isNightSleep"] = self._night_classifier(
                    datetime.fromisoformat(record["date"])
                )
        self.store.set(key, json.dumps(raw))

    def _migrate_to_v2(self) -> None:
        # Each copy is migrated on its own so a corrupt primary cannot
        # leave an intact backup in the v1 layout.
        for key in (SESSIONS_KEY, SESSIONS_BACKUP_KEY):
            try:
                self._add_night_flags(key)
            except (SessionDecodeError, TypeError, ValueError, KeyError) as e:
                logger.warning("Could not migrate %s (%s); left for recovery", key, e)

        # v1 kept the day ratio under a standalone key.
        legacy = self.store.get(LEGACY_THRESHOLD_KEY)
        if legacy is not None:
            state = self.load_state()
            if state is None:
                self.store.set(STATE_KEY, {
                    "schemaVersion": CURRENT_SCHEMA_VERSION,
                    "dayRatio": float(legacy),
                    "nightRatio": None,
                    "lastUpdateDate": None,
                    "firstUseDate": self._clock().isoformat(),
                })
            self.store.remove(LEGACY_THRESHOLD_KEY)
