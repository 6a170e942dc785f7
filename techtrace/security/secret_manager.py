from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from techtrace.backup.errors import ConfigurationError


class SecretManager:
  """Seals settings values (cloud tokens, client secret) with a local Fernet key.

  The key lives in a single file next to the settings database. It is created on
  first use and never rotated; losing it means signing in to Google Drive again.
  """

  def __init__(self, key_path: Path) -> None:
    self.key_path = Path(key_path)
    self.key_path.parent.mkdir(parents=True, exist_ok=True)
    key = self._read_key() if self.key_path.exists() else self._write_new_key()
    try:
      self._fernet = Fernet(key)
    except ValueError as exc:
      raise ConfigurationError(f'{self.key_path} does not hold a valid Fernet key') from exc

  def _read_key(self) -> bytes:
    key = self.key_path.read_bytes().strip()
    if not key:
      raise ConfigurationError(f'Encryption key file {self.key_path} is empty')
    return key

  def _write_new_key(self) -> bytes:
    key = Fernet.generate_key()
    self.key_path.write_bytes(key)
    try:
      os.chmod(self.key_path, 0o600)
    except PermissionError:
      # Windows may refuse chmod; the key file still exists.
      pass
    return key

  def seal(self, value: Any) -> bytes:
    return self._fernet.encrypt(json.dumps(value).encode('utf-8'))

  def unseal(self, token: bytes) -> Any:
    try:
      raw = self._fernet.decrypt(token)
    except InvalidToken as exc:
      raise ConfigurationError(
        f'A stored secret could not be decrypted with the key at {self.key_path}; sign in to Google Drive again.'
      ) from exc
    return json.loads(raw.decode('utf-8'))
