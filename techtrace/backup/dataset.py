from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from techtrace.backup.errors import MalformedData, StorageUnavailable
from techtrace.backup.models import Record
from techtrace.storage.adapter import write_json_atomic

logger = logging.getLogger(__name__)


class DatasetRepository(Protocol):
  """The job-tracking domain's own load/save path for records and settings."""

  async def load_records(self) -> List[Record]:
    ...

  async def save_records(self, records: List[Record]) -> None:
    ...

  async def load_settings(self) -> Dict[str, Any]:
    ...

  async def save_settings(self, settings: Dict[str, Any]) -> None:
    ...


class InMemoryDataset:
  def __init__(self, records: Optional[List[Record]] = None, settings: Optional[Dict[str, Any]] = None) -> None:
    self.records: List[Record] = [dict(record) for record in records or []]
    self.settings: Dict[str, Any] = dict(settings or {})

  async def load_records(self) -> List[Record]:
    return [dict(record) for record in self.records]

  async def save_records(self, records: List[Record]) -> None:
    self.records = [dict(record) for record in records]

  async def load_settings(self) -> Dict[str, Any]:
    return dict(self.settings)

  async def save_settings(self, settings: Dict[str, Any]) -> None:
    self.settings = dict(settings)


class JsonDatasetRepository:
  """Dataset kept in one ``{"records": [...], "settings": {...}}`` JSON file."""

  def __init__(self, path: Path) -> None:
    self.path = Path(path)

  def _load_sync(self) -> Dict[str, Any]:
    if not self.path.exists():
      return {'records': [], 'settings': {}}
    try:
      data = json.loads(self.path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as exc:
      raise MalformedData(f'Dataset file {self.path} is not valid JSON') from exc
    except OSError as exc:
      raise StorageUnavailable(f'Dataset file {self.path} cannot be read: {exc}') from exc
    if not isinstance(data, dict):
      raise MalformedData(f'Dataset file {self.path} must contain an object')
    data.setdefault('records', [])
    data.setdefault('settings', {})
    return data

  def _update_sync(self, key: str, value: Any) -> None:
    data = self._load_sync()
    data[key] = value
    try:
      self.path.parent.mkdir(parents=True, exist_ok=True)
      write_json_atomic(self.path, data)
    except OSError as exc:
      raise StorageUnavailable(f'Dataset file {self.path} cannot be written: {exc}') from exc
    logger.debug('Saved dataset %s to %s', key, self.path)

  async def load_records(self) -> List[Record]:
    data = await asyncio.to_thread(self._load_sync)
    return list(data['records'])

  async def save_records(self, records: List[Record]) -> None:
    await asyncio.to_thread(self._update_sync, 'records', list(records))

  async def load_settings(self) -> Dict[str, Any]:
    data = await asyncio.to_thread(self._load_sync)
    return dict(data['settings'])

  async def save_settings(self, settings: Dict[str, Any]) -> None:
    await asyncio.to_thread(self._update_sync, 'settings', dict(settings))
