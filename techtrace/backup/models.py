from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

SCHEMA_VERSION = '2.0.0'
LEGACY_SCHEMA_VERSION = '1.0.0'
BACKUP_FILENAME_PREFIX = 'backup_'
BACKUP_FILENAME_PATTERN = 'backup_*.json'
DEFAULT_TOTAL_FIELDS = ('awValue',)
DEVICE_LOCAL_SETTINGS = ('isAuthenticated', 'biometricEnabled')

# Job records are opaque apart from ``id`` and their modification timestamp.
Record = Dict[str, Any]


def utc_now() -> datetime:
  return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
  """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime.

  Anything unusable, including values outside the platform's datetime range,
  raises ``ValueError``.
  """
  if isinstance(value, bool):
    raise ValueError('boolean is not a timestamp')
  if isinstance(value, (int, float)):
    try:
      return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError) as exc:
      raise ValueError(f'epoch milliseconds {value!r} are out of range') from exc
  if not isinstance(value, str) or not value.strip():
    raise ValueError('timestamp must be a non-empty string')
  text = value.strip()
  if text.endswith('Z') or text.endswith('z'):
    text = text[:-1] + '+00:00'
  parsed = datetime.fromisoformat(text)
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  try:
    return parsed.astimezone(timezone.utc)
  except OverflowError as exc:
    raise ValueError(f'{value!r} is out of range') from exc


def format_timestamp(moment: datetime) -> str:
  moment = moment.astimezone(timezone.utc)
  return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def snapshot_filename(moment: datetime, suffix: str = '.json') -> str:
  # Lexicographic order of these names equals chronological order.
  moment = moment.astimezone(timezone.utc)
  stamp = moment.strftime('%Y-%m-%dT%H-%M-%S') + f'-{moment.microsecond // 1000:03d}Z'
  return f'{BACKUP_FILENAME_PREFIX}{stamp}{suffix}'


def record_id(record: Record) -> str:
  return str(record['id'])


def record_timestamp_value(record: Record) -> Any:
  for key in ('updatedAt', 'dateModified', 'dateCreated'):
    value = record.get(key)
    if value not in (None, ''):
      return value
  return None


def record_updated_at(record: Record) -> datetime:
  value = record_timestamp_value(record)
  if value is None:
    raise ValueError(f'record {record.get("id")!r} has no modification timestamp')
  return parse_timestamp(value)


def summarize_records(records: Sequence[Record], total_fields: Iterable[str] = DEFAULT_TOTAL_FIELDS) -> Dict[str, float]:
  totals: Dict[str, float] = {}
  for name in total_fields:
    total = 0.0
    for record in records:
      value = record.get(name)
      if isinstance(value, (int, float)) and not isinstance(value, bool):
        total += value
    totals[name] = round(total, 4)
  return totals


@dataclass(frozen=True)
class BackupSnapshot:
  schema_version: str
  created_at: str
  records: List[Record]
  settings: Dict[str, Any] = field(default_factory=dict)
  metadata: Dict[str, Any] = field(default_factory=dict)

  @classmethod
  def create(
    cls,
    records: Sequence[Record],
    settings: Optional[Dict[str, Any]],
    app_version: str,
    total_fields: Iterable[str] = DEFAULT_TOTAL_FIELDS,
    now: Optional[datetime] = None
  ) -> 'BackupSnapshot':
    moment = now or utc_now()
    stamp = format_timestamp(moment)
    snapshot_settings = dict(settings or {})
    if 'isAuthenticated' in snapshot_settings:
      snapshot_settings['isAuthenticated'] = False
    metadata = {
      'recordCount': len(records),
      'totals': summarize_records(records, total_fields),
      'exportDate': stamp,
      'appVersion': app_version
    }
    return cls(
      schema_version=SCHEMA_VERSION,
      created_at=stamp,
      records=[dict(record) for record in records],
      settings=snapshot_settings,
      metadata=metadata
    )

  @property
  def record_count(self) -> int:
    return len(self.records)

  def to_payload(self) -> Dict[str, Any]:
    return {
      'schemaVersion': self.schema_version,
      'createdAt': self.created_at,
      'records': [dict(record) for record in self.records],
      'settings': dict(self.settings),
      'metadata': dict(self.metadata)
    }


@dataclass
class ValidationResult:
  snapshot: BackupSnapshot
  warnings: List[str] = field(default_factory=list)
  legacy: bool = False


@dataclass
class DiffResult:
  created: List[Record] = field(default_factory=list)
  updated: List[Record] = field(default_factory=list)
  unchanged: List[Record] = field(default_factory=list)

  def summary(self) -> Dict[str, int]:
    return {
      'created': len(self.created),
      'updated': len(self.updated),
      'unchanged': len(self.unchanged)
    }


@dataclass
class MergeStats:
  created: int = 0
  updated: int = 0
  unchanged: int = 0

  def as_dict(self) -> Dict[str, int]:
    return {'created': self.created, 'updated': self.updated, 'unchanged': self.unchanged}


@dataclass
class MergeResult:
  records: List[Record]
  stats: MergeStats


@dataclass
class RemoteSession:
  access_token: str
  refresh_token: Optional[str]
  expires_at: float

  def expires_within(self, margin_seconds: float, now: Optional[float] = None) -> bool:
    current = time.time() if now is None else now
    return current >= self.expires_at - margin_seconds

  def to_dict(self) -> Dict[str, Any]:
    return {
      'access_token': self.access_token,
      'refresh_token': self.refresh_token,
      'expires_at': self.expires_at
    }

  @classmethod
  def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['RemoteSession']:
    if not data or not data.get('access_token'):
      return None
    return cls(
      access_token=data['access_token'],
      refresh_token=data.get('refresh_token'),
      expires_at=float(data.get('expires_at') or 0.0)
    )


@dataclass
class RemoteBackupFile:
  id: str
  name: str
  created_time: Optional[str] = None
  modified_time: Optional[str] = None
  size: Optional[int] = None

  @classmethod
  def from_api(cls, payload: Dict[str, Any]) -> 'RemoteBackupFile':
    size = payload.get('size')
    return cls(
      id=payload['id'],
      name=payload.get('name', ''),
      created_time=payload.get('createdTime'),
      modified_time=payload.get('modifiedTime'),
      size=int(size) if size is not None else None
    )

  def as_dict(self) -> Dict[str, Any]:
    return {
      'id': self.id,
      'name': self.name,
      'created_time': self.created_time,
      'modified_time': self.modified_time,
      'size': self.size
    }


class StorageKind(str, Enum):
  SANDBOX = 'sandbox'
  EXTERNAL = 'external'


@dataclass
class StorageLocation:
  kind: StorageKind
  location: str
  live: bool = True

  def as_dict(self) -> Dict[str, Any]:
    return {'kind': self.kind.value, 'location': self.location, 'live': self.live}


@dataclass
class OperationResult:
  """Uniform outcome returned by every facade entry point."""

  success: bool
  message: str
  data: Optional[Any] = None

  def as_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {'success': self.success, 'message': self.message}
    if self.data is not None:
      payload['data'] = self.data
    return payload
