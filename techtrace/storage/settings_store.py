from __future__ import annotations

import copy
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

from techtrace.backup.errors import StorageUnavailable
from techtrace.security.secret_manager import SecretManager

EXTERNAL_DIR_KEY = 'external_backup_dir'
DRIVE_CONFIG_KEY = 'drive_config'
DRIVE_SESSION_KEY = 'drive_session'
DRIVE_FOLDER_KEY = 'drive_folder_id'

DEFAULT_SECRET_KEYS = frozenset({DRIVE_CONFIG_KEY, DRIVE_SESSION_KEY})


class KeyValueStore(Protocol):
  """The app-wide get/set/clear settings service."""

  def get(self, key: str, default: Any = None) -> Any:
    ...

  def set(self, key: str, value: Any) -> None:
    ...

  def clear(self, key: str) -> None:
    ...


class MemorySettingsStore:
  def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
    self._values: Dict[str, Any] = copy.deepcopy(initial or {})

  def get(self, key: str, default: Any = None) -> Any:
    if key not in self._values:
      return default
    return copy.deepcopy(self._values[key])

  def set(self, key: str, value: Any) -> None:
    self._values[key] = copy.deepcopy(value)

  def clear(self, key: str) -> None:
    self._values.pop(key, None)


class SqliteSettingsStore:
  """SQLite-backed key-value settings; values under ``secret_keys`` are encrypted."""

  def __init__(
    self,
    db_path: Path,
    secret_manager: Optional[SecretManager] = None,
    secret_keys: Iterable[str] = DEFAULT_SECRET_KEYS
  ) -> None:
    self.db_path = Path(db_path)
    self.db_path.parent.mkdir(parents=True, exist_ok=True)
    self.secret_manager = secret_manager
    self.secret_keys = frozenset(secret_keys)
    self._init_schema()

  def _connect(self) -> sqlite3.Connection:
    try:
      connection = sqlite3.connect(self.db_path)
    except sqlite3.Error as exc:
      raise StorageUnavailable(f'Settings database {self.db_path} cannot be opened: {exc}') from exc
    connection.row_factory = sqlite3.Row
    return connection

  def _init_schema(self) -> None:
    with self._connect() as conn:
      conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
          key TEXT PRIMARY KEY,
          value BLOB NOT NULL,
          encrypted INTEGER NOT NULL DEFAULT 0,
          updated_at REAL NOT NULL
        );
        """
      )
      conn.commit()

  def get(self, key: str, default: Any = None) -> Any:
    with self._connect() as conn:
      row = conn.execute("SELECT value, encrypted FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
      return default
    if row['encrypted']:
      if not self.secret_manager:
        return default
      return self.secret_manager.unseal(bytes(row['value']))
    raw = row['value']
    if isinstance(raw, bytes):
      raw = raw.decode('utf-8')
    return json.loads(raw)

  def set(self, key: str, value: Any) -> None:
    if key in self.secret_keys and self.secret_manager:
      encoded, encrypted = self.secret_manager.seal(value), 1
    else:
      encoded, encrypted = json.dumps(value).encode('utf-8'), 0
    with self._connect() as conn:
      conn.execute(
        """
        INSERT INTO settings (key, value, encrypted, updated_at) VALUES (?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
          value = excluded.value,
          encrypted = excluded.encrypted,
          updated_at = excluded.updated_at
        """,
        (key, encoded, encrypted, time.time())
      )
      conn.commit()

  def clear(self, key: str) -> None:
    with self._connect() as conn:
      conn.execute("DELETE FROM settings WHERE key = ?", (key,))
      conn.commit()
