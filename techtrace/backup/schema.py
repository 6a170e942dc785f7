from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

from techtrace.backup.errors import ValidationError
from techtrace.backup.models import (
  LEGACY_SCHEMA_VERSION,
  SCHEMA_VERSION,
  BackupSnapshot,
  ValidationResult,
  parse_timestamp,
  record_timestamp_value
)

logger = logging.getLogger(__name__)

# Versions this build can read, mapped to whether they are the current layout.
KNOWN_SCHEMA_VERSIONS: Dict[str, bool] = {
  SCHEMA_VERSION: True,
  LEGACY_SCHEMA_VERSION: False
}

# Fields older 1.0.0 exports used for their version before schemaVersion existed.
LEGACY_VERSION_FIELDS = ('version', 'backupVersion')


def validate_snapshot(payload: Any) -> ValidationResult:
  """Check a decoded payload against the backup schema.

  ``schemaVersion`` is checked before anything else is looked at; 1.0.0
  exports that predate it are recognised by ``version`` or ``backupVersion``.
  Older recognised versions pass with a warning; failures raise ``ValidationError``
  naming the offending field.
  """
  if not isinstance(payload, dict):
    raise ValidationError('$', f'expected a JSON object, got {_type_name(payload)}')

  version_field = _version_field(payload)
  version = payload[version_field]
  if not isinstance(version, str) or not version.strip():
    raise ValidationError('schemaVersion', f'expected a non-empty string, got {_type_name(version)}')
  if version not in KNOWN_SCHEMA_VERSIONS:
    raise ValidationError('schemaVersion', f'unrecognized version {version!r}')
  current = KNOWN_SCHEMA_VERSIONS[version]

  warnings: List[str] = []
  if not current:
    warnings.append(
      f'Backup uses schema {version}, older than {SCHEMA_VERSION}; it was read in compatibility mode.'
    )

  created_field = 'createdAt'
  created_at = payload.get('createdAt')
  if created_at is None and not current:
    created_field = 'timestamp'
    created_at = payload.get('timestamp')
  if created_at is None:
    raise ValidationError('createdAt', 'missing')
  try:
    parse_timestamp(created_at)
  except ValueError as exc:
    raise ValidationError(created_field, f'not a valid timestamp ({exc})') from exc

  records_field = 'records'
  records = payload.get('records')
  if records is None and not current:
    records_field = 'jobs'
    records = payload.get('jobs')
  if records is None:
    raise ValidationError('records', 'missing')
  if not isinstance(records, list):
    raise ValidationError(records_field, f'expected a list, got {_type_name(records)}')
  _validate_records(records, records_field, current)

  settings = payload.get('settings', {})
  if settings is None:
    settings = {}
  if not isinstance(settings, dict):
    raise ValidationError('settings', f'expected an object, got {_type_name(settings)}')

  if 'metadata' not in payload:
    raise ValidationError('metadata', 'missing')
  metadata = payload['metadata']
  if not isinstance(metadata, dict):
    raise ValidationError('metadata', f'expected an object, got {_type_name(metadata)}')

  count = metadata.get('recordCount', metadata.get('totalJobs'))
  if isinstance(count, int) and count != len(records):
    warnings.append(f'metadata reports {count} records but the backup contains {len(records)}.')

  for message in warnings:
    logger.warning('Snapshot validation warning: %s', message)

  snapshot = BackupSnapshot(
    schema_version=version,
    created_at=created_at if isinstance(created_at, str) else str(created_at),
    records=records,
    settings=settings,
    metadata=metadata
  )
  return ValidationResult(snapshot=snapshot, warnings=warnings, legacy=not current)


def _version_field(payload: Dict[str, Any]) -> str:
  if 'schemaVersion' in payload:
    return 'schemaVersion'
  for name in LEGACY_VERSION_FIELDS:
    if payload.get(name) == LEGACY_SCHEMA_VERSION:
      return name
  raise ValidationError('schemaVersion', 'missing')


def _validate_records(records: List[Any], field_name: str, current: bool) -> None:
  seen: Set[str] = set()
  for index, record in enumerate(records):
    path = f'{field_name}[{index}]'
    if not isinstance(record, dict):
      raise ValidationError(path, f'expected an object, got {_type_name(record)}')
    identifier = record.get('id')
    if not isinstance(identifier, str) or not identifier:
      raise ValidationError(f'{path}.id', 'missing or not a non-empty string')
    if identifier in seen:
      raise ValidationError(f'{path}.id', f'duplicate id {identifier!r}')
    seen.add(identifier)

    if current:
      stamp_field = 'updatedAt'
      stamp = record.get('updatedAt')
    else:
      stamp = record_timestamp_value(record)
      stamp_field = next(
        (key for key in ('updatedAt', 'dateModified', 'dateCreated') if record.get(key) not in (None, '')),
        'updatedAt'
      )
    if stamp is None:
      raise ValidationError(f'{path}.{stamp_field}', 'missing')
    try:
      parse_timestamp(stamp)
    except ValueError as exc:
      raise ValidationError(f'{path}.{stamp_field}', f'not a valid timestamp ({exc})') from exc


def _type_name(value: Any) -> str:
  if value is None:
    return 'null'
  if isinstance(value, bool):
    return 'boolean'
  if isinstance(value, (int, float)):
    return 'number'
  if isinstance(value, str):
    return 'string'
  if isinstance(value, list):
    return 'list'
  if isinstance(value, dict):
    return 'object'
  return type(value).__name__
