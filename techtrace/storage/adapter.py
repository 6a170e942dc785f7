from __future__ import annotations

import asyncio
import errno
import fnmatch
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from techtrace.backup.errors import (
  MalformedData,
  NotFound,
  PermissionRevoked,
  StorageUnavailable
)
from techtrace.backup.models import StorageKind
from techtrace.storage.settings_store import EXTERNAL_DIR_KEY, KeyValueStore

logger = logging.getLogger(__name__)

_DENIED_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


class ExternalDirectoryHandle:
  """Persisted grant to a user-selected directory.

  The directory path is only handed out by ``resolve``, which re-checks that the
  grant is still recorded in the settings store and that the directory is still
  reachable. Revoking the grant (or losing access to the directory) makes every
  later ``resolve`` raise ``PermissionRevoked``.
  """

  def __init__(self, uri: str, grant_id: str, granted_at: float) -> None:
    self._uri = uri
    self.grant_id = grant_id
    self.granted_at = granted_at

  @property
  def display_name(self) -> str:
    return self._uri

  @classmethod
  def grant(cls, directory: Path, store: KeyValueStore) -> 'ExternalDirectoryHandle':
    target = Path(directory).expanduser()
    if not target.is_dir():
      raise StorageUnavailable(f'{target} is not an existing directory')
    if not os.access(target, os.R_OK | os.W_OK | os.X_OK):
      raise StorageUnavailable(f'{target} is not readable and writable')
    handle = cls(str(target.resolve()), uuid.uuid4().hex, time.time())
    store.set(EXTERNAL_DIR_KEY, handle.to_dict())
    logger.info('Granted external backup directory %s', handle.display_name)
    return handle

  @classmethod
  def load(cls, store: KeyValueStore) -> Optional['ExternalDirectoryHandle']:
    data = store.get(EXTERNAL_DIR_KEY)
    if not isinstance(data, dict) or not data.get('uri') or not data.get('grant_id'):
      return None
    return cls(data['uri'], data['grant_id'], float(data.get('granted_at') or 0.0))

  @staticmethod
  def revoke(store: KeyValueStore) -> None:
    store.clear(EXTERNAL_DIR_KEY)

  def is_live(self, store: KeyValueStore) -> bool:
    try:
      self.resolve(store)
    except PermissionRevoked:
      return False
    return True

  def resolve(self, store: KeyValueStore) -> Path:
    current = store.get(EXTERNAL_DIR_KEY)
    if not isinstance(current, dict) or current.get('grant_id') != self.grant_id:
      raise PermissionRevoked(f'Access to {self._uri} was revoked')
    path = Path(self._uri)
    if not path.is_dir() or not os.access(path, os.R_OK | os.W_OK | os.X_OK):
      raise PermissionRevoked(f'Access to {self._uri} is no longer granted')
    return path

  def to_dict(self) -> Dict[str, Any]:
    return {'uri': self._uri, 'grant_id': self.grant_id, 'granted_at': self.granted_at}


class FileStorage:
  """JSON file primitives rooted at one directory; paths are relative to the root."""

  kind: StorageKind = StorageKind.SANDBOX

  def root(self) -> Path:
    raise NotImplementedError

  def describe(self) -> str:
    raise NotImplementedError

  def _path(self, relative: str) -> Path:
    root = self.root().resolve()
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
      raise StorageUnavailable(f'{relative} escapes the storage root')
    return candidate

  def _translate(self, exc: OSError, path: Path) -> Exception:
    if isinstance(exc, FileNotFoundError):
      return NotFound(f'{path} does not exist')
    if isinstance(exc, PermissionError) or exc.errno in _DENIED_ERRNOS:
      return StorageUnavailable(f'{path} cannot be accessed: {exc.strerror or exc}')
    return StorageUnavailable(f'{path} failed: {exc.strerror or exc}')

  async def exists(self, relative: str) -> bool:
    path = self._path(relative)
    return await asyncio.to_thread(path.exists)

  async def ensure_directory(self, relative: str = '') -> Path:
    path = self._path(relative)
    try:
      await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
    except OSError as exc:
      raise self._translate(exc, path) from exc
    return path

  async def write_json(self, relative: str, value: Any) -> Path:
    path = self._path(relative)
    try:
      await asyncio.to_thread(write_json_atomic, path, value)
    except OSError as exc:
      raise self._translate(exc, path) from exc
    logger.debug('Wrote %s', path)
    return path

  async def write_bytes(self, relative: str, content: bytes) -> Path:
    path = self._path(relative)
    try:
      await asyncio.to_thread(write_bytes_atomic, path, content)
    except OSError as exc:
      raise self._translate(exc, path) from exc
    return path

  async def read_bytes(self, relative: str) -> bytes:
    path = self._path(relative)
    try:
      return await asyncio.to_thread(path.read_bytes)
    except IsADirectoryError as exc:
      raise NotFound(f'{path} is a directory') from exc
    except OSError as exc:
      raise self._translate(exc, path) from exc

  async def read_json(self, relative: str) -> Any:
    path = self._path(relative)
    return decode_json(await self.read_bytes(relative), str(path))

  async def list_entries(self, relative: str = '') -> List[str]:
    path = self._path(relative)
    try:
      names = await asyncio.to_thread(os.listdir, path)
    except OSError as exc:
      raise self._translate(exc, path) from exc
    return sorted(name for name in names if not name.startswith('.'))

  async def most_recent_by_pattern(self, relative: str, pattern: str) -> Optional[str]:
    # Names carry a sortable timestamp prefix, so the last name is the newest.
    try:
      names = await self.list_entries(relative)
    except NotFound:
      return None
    matches = [name for name in names if fnmatch.fnmatchcase(name, pattern)]
    return max(matches) if matches else None

  async def delete(self, relative: str) -> None:
    path = self._path(relative)
    try:
      await asyncio.to_thread(path.unlink)
    except OSError as exc:
      raise self._translate(exc, path) from exc


class SandboxStorage(FileStorage):
  """App-private directory; always available, no permission grant involved."""

  kind = StorageKind.SANDBOX

  def __init__(self, root: Path) -> None:
    self._root = Path(root)

  def root(self) -> Path:
    return self._root

  def describe(self) -> str:
    return str(self._root)


class ExternalDirectoryStorage(FileStorage):
  """User-granted directory; every operation first re-validates the grant."""

  kind = StorageKind.EXTERNAL

  def __init__(self, handle: ExternalDirectoryHandle, store: KeyValueStore) -> None:
    self.handle = handle
    self.store = store

  def root(self) -> Path:
    return self.handle.resolve(self.store)

  def describe(self) -> str:
    return self.handle.display_name

  def _translate(self, exc: OSError, path: Path) -> Exception:
    if isinstance(exc, PermissionError) or exc.errno in _DENIED_ERRNOS:
      return PermissionRevoked(f'Access to {self.handle.display_name} was denied: {exc.strerror or exc}')
    return super()._translate(exc, path)


async def read_file_bytes(path: Path) -> bytes:
  """Read a caller-selected file outside the managed storage roots."""
  target = Path(path).expanduser()
  try:
    return await asyncio.to_thread(target.read_bytes)
  except FileNotFoundError as exc:
    raise NotFound(f'{target} does not exist') from exc
  except IsADirectoryError as exc:
    raise NotFound(f'{target} is a directory') from exc
  except OSError as exc:
    raise StorageUnavailable(f'{target} cannot be read: {exc.strerror or exc}') from exc


def decode_json(raw: bytes, source: str) -> Any:
  try:
    text = raw.decode('utf-8-sig')
  except UnicodeDecodeError as exc:
    raise MalformedData(f'{source} is not UTF-8 text') from exc
  if not text.strip():
    raise MalformedData(f'{source} is empty')
  try:
    return json.loads(text)
  except json.JSONDecodeError as exc:
    raise MalformedData(f'{source} is not valid JSON (line {exc.lineno}, column {exc.colno})') from exc


def write_json_atomic(path: Path, value: Any) -> None:
  content = json.dumps(value, indent=2, ensure_ascii=False).encode('utf-8')
  write_bytes_atomic(path, content)


def write_bytes_atomic(path: Path, content: bytes) -> None:
  temp_path = path.parent / f'.{path.name}.{uuid.uuid4().hex}.tmp'
  try:
    with temp_path.open('wb') as handle:
      handle.write(content)
      handle.flush()
      os.fsync(handle.fileno())
    temp_path.replace(path)
  finally:
    if temp_path.exists():
      temp_path.unlink()
