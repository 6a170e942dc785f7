from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from techtrace.backup.dataset import DatasetRepository
from techtrace.backup.errors import BackupError, ConfigurationError, NotFound, StorageUnavailable
from techtrace.backup.merge import diff_records, merge_records
from techtrace.backup.models import (
  BACKUP_FILENAME_PATTERN,
  DEFAULT_TOTAL_FIELDS,
  DEVICE_LOCAL_SETTINGS,
  BackupSnapshot,
  DiffResult,
  MergeStats,
  StorageKind,
  StorageLocation,
  ValidationResult,
  snapshot_filename,
  utc_now
)
from techtrace.backup.schema import validate_snapshot
from techtrace.reports.generator import ReportRenderer
from techtrace.storage.adapter import (
  ExternalDirectoryHandle,
  ExternalDirectoryStorage,
  FileStorage,
  SandboxStorage,
  decode_json,
  read_file_bytes
)
from techtrace.storage.settings_store import KeyValueStore

logger = logging.getLogger(__name__)

SELF_TEST_PREFIX = '.techtrace_selftest_'


@dataclass
class ExternalCopy:
  status: str
  location: Optional[str] = None
  error: Optional[BackupError] = None

  def as_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {'status': self.status, 'location': self.location}
    if self.error is not None:
      payload['error'] = str(self.error)
      payload['error_type'] = type(self.error).__name__
    return payload


@dataclass
class BackupCreated:
  filename: str
  path: str
  snapshot: BackupSnapshot
  companion: Optional[str] = None
  companion_error: Optional[str] = None
  external: ExternalCopy = field(default_factory=lambda: ExternalCopy(status='skipped'))

  def as_dict(self) -> Dict[str, Any]:
    return {
      'filename': self.filename,
      'path': self.path,
      'created_at': self.snapshot.created_at,
      'record_count': self.snapshot.record_count,
      'totals': self.snapshot.metadata.get('totals', {}),
      'companion': self.companion,
      'companion_error': self.companion_error,
      'external': self.external.as_dict()
    }


@dataclass
class ImportPreview:
  source: str
  snapshot: BackupSnapshot
  diff: DiffResult
  warnings: List[str] = field(default_factory=list)
  legacy: bool = False

  def as_dict(self) -> Dict[str, Any]:
    return {
      'source': self.source,
      'schema_version': self.snapshot.schema_version,
      'created_at': self.snapshot.created_at,
      'record_count': self.snapshot.record_count,
      'diff': self.diff.summary(),
      'warnings': list(self.warnings),
      'legacy': self.legacy
    }


@dataclass
class MergeOutcome:
  stats: MergeStats
  settings_restored: bool = False

  def as_dict(self) -> Dict[str, Any]:
    return {**self.stats.as_dict(), 'settings_restored': self.settings_restored}


@dataclass
class SelfTestResult:
  kind: StorageKind
  location: str
  ok: bool
  error: Optional[BackupError] = None

  def as_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {'kind': self.kind.value, 'location': self.location, 'ok': self.ok}
    if self.error is not None:
      payload['error'] = str(self.error)
      payload['error_type'] = type(self.error).__name__
    return payload


def merge_settings(local: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
  """Incoming settings replace local ones apart from keys that belong to this device."""
  merged = dict(incoming)
  for key in DEVICE_LOCAL_SETTINGS:
    if key in local:
      merged[key] = local[key]
    else:
      merged.pop(key, None)
  return merged


class LocalBackupManager:
  """Creates, imports and merges snapshots on the sandbox and the optional external directory.

  Snapshots are always written to ``<sandbox>/<backup_dir>`` first. When an external
  directory has been granted, the same files are copied there on a best-effort basis;
  a failed copy is reported in the result and never undoes the sandbox write.
  """

  def __init__(
    self,
    sandbox: SandboxStorage,
    store: KeyValueStore,
    backup_dir: str = 'backups',
    app_version: str = '1.0.0',
    report_renderer: Optional[ReportRenderer] = None,
    total_fields: Iterable[str] = DEFAULT_TOTAL_FIELDS,
    external_supported: bool = True,
    clock: Callable[[], datetime] = utc_now
  ) -> None:
    self.sandbox = sandbox
    self.store = store
    self.backup_dir = backup_dir
    self.app_version = app_version
    self.report_renderer = report_renderer
    self.total_fields = tuple(total_fields)
    self.external_supported = external_supported
    self.clock = clock

  # Locations ----------------------------------------------------------------

  def external_storage(self) -> Optional[ExternalDirectoryStorage]:
    if not self.external_supported:
      return None
    handle = ExternalDirectoryHandle.load(self.store)
    if handle is None:
      return None
    return ExternalDirectoryStorage(handle, self.store)

  def describe_location(self) -> StorageLocation:
    external = self.external_storage()
    if external is not None:
      return StorageLocation(
        kind=StorageKind.EXTERNAL,
        location=external.describe(),
        live=external.handle.is_live(self.store)
      )
    return StorageLocation(kind=StorageKind.SANDBOX, location=str(self.sandbox.root() / self.backup_dir))

  async def configure_external_directory(self, directory: Path) -> StorageLocation:
    if not self.external_supported:
      raise ConfigurationError('External backup directories are not supported on this platform.')
    handle = ExternalDirectoryHandle.grant(directory, self.store)
    storage = ExternalDirectoryStorage(handle, self.store)
    try:
      await self._write_read_delete(storage)
    except BackupError:
      ExternalDirectoryHandle.revoke(self.store)
      raise
    logger.info('External backup directory set to %s', handle.display_name)
    return StorageLocation(kind=StorageKind.EXTERNAL, location=handle.display_name)

  def clear_external_directory(self) -> Optional[str]:
    handle = ExternalDirectoryHandle.load(self.store)
    ExternalDirectoryHandle.revoke(self.store)
    if handle is None:
      return None
    logger.info('Cleared external backup directory %s', handle.display_name)
    return handle.display_name

  # Create -------------------------------------------------------------------

  async def build_snapshot(self, dataset: DatasetRepository, now: Optional[datetime] = None) -> BackupSnapshot:
    """Assemble a snapshot of the dataset and check it against the schema before use."""
    records = await dataset.load_records()
    settings = await dataset.load_settings()
    snapshot = BackupSnapshot.create(records, settings, self.app_version, self.total_fields, now=now or self.clock())
    validate_snapshot(snapshot.to_payload())
    return snapshot

  async def create_backup(self, dataset: DatasetRepository) -> BackupCreated:
    await self.sandbox.ensure_directory(self.backup_dir)
    moment = self.clock()
    filename = snapshot_filename(moment)
    while await self.sandbox.exists(f'{self.backup_dir}/{filename}'):
      moment += timedelta(milliseconds=1)
      filename = snapshot_filename(moment)

    snapshot = await self.build_snapshot(dataset, now=moment)
    payload = snapshot.to_payload()

    path = await self.sandbox.write_json(f'{self.backup_dir}/{filename}', payload)
    logger.info('Wrote backup %s (%s records)', path, snapshot.record_count)
    result = BackupCreated(filename=filename, path=str(path), snapshot=snapshot)

    companion = None
    if self.report_renderer is not None:
      companion = snapshot_filename(moment, self.report_renderer.suffix)
      try:
        rendered = self.report_renderer.render(snapshot)
        companion_path = await self.sandbox.write_bytes(f'{self.backup_dir}/{companion}', rendered)
        result.companion = str(companion_path)
      except Exception as exc:
        logger.warning('Companion export for %s failed: %s', filename, exc)
        result.companion_error = str(exc)
        companion = None

    result.external = await self._copy_external(filename, payload, companion)
    return result

  async def _copy_external(self, filename: str, payload: Dict[str, Any], companion: Optional[str]) -> ExternalCopy:
    external = self.external_storage()
    if external is None:
      return ExternalCopy(status='skipped')
    try:
      target = await external.write_json(filename, payload)
      if companion:
        content = await self.sandbox.read_bytes(f'{self.backup_dir}/{companion}')
        await external.write_bytes(companion, content)
    except BackupError as exc:
      logger.warning('Copy of %s to %s failed: %s', filename, external.describe(), exc)
      return ExternalCopy(status='failed', location=external.describe(), error=exc)
    logger.info('Copied backup %s to %s', filename, external.describe())
    return ExternalCopy(status='copied', location=str(target))

  # Import / merge -------------------------------------------------------------

  async def _latest_source(self) -> tuple[FileStorage, str]:
    external = self.external_storage()
    if external is not None and external.handle.is_live(self.store):
      name = await external.most_recent_by_pattern('', BACKUP_FILENAME_PATTERN)
      if name:
        return external, name
    name = await self.sandbox.most_recent_by_pattern(self.backup_dir, BACKUP_FILENAME_PATTERN)
    if name:
      return self.sandbox, f'{self.backup_dir}/{name}'
    raise NotFound('No backup files were found.')

  async def import_backup(self, dataset: DatasetRepository, source: Optional[Path] = None) -> ImportPreview:
    """Read, validate and diff a snapshot without touching the dataset."""
    if source is not None:
      label = str(Path(source).expanduser())
      raw = await read_file_bytes(Path(source))
    else:
      storage, relative = await self._latest_source()
      label = f'{storage.describe()}/{relative}'
      raw = await storage.read_bytes(relative)

    return await self.preview(validate_snapshot(decode_json(raw, label)), label, dataset)

  async def preview(self, validated: ValidationResult, source: str, dataset: DatasetRepository) -> ImportPreview:
    local_records = await dataset.load_records()
    diff = diff_records(local_records, validated.snapshot.records)
    logger.info('Prepared import preview from %s: %s', source, diff.summary())
    return ImportPreview(
      source=source,
      snapshot=validated.snapshot,
      diff=diff,
      warnings=validated.warnings,
      legacy=validated.legacy
    )

  async def merge_backup(self, snapshot: BackupSnapshot, dataset: DatasetRepository) -> MergeOutcome:
    validated = validate_snapshot(snapshot.to_payload())
    local_records = await dataset.load_records()
    merged = merge_records(local_records, validated.snapshot.records)
    await dataset.save_records(merged.records)

    restored = False
    if validated.snapshot.settings:
      local_settings = await dataset.load_settings()
      await dataset.save_settings(merge_settings(local_settings, validated.snapshot.settings))
      restored = True
    logger.info('Merged backup from %s: %s', validated.snapshot.created_at, merged.stats.as_dict())
    return MergeOutcome(stats=merged.stats, settings_restored=restored)

  # Listing / self-test --------------------------------------------------------

  async def list_backups(self) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    for name in await self._matching(self.sandbox, self.backup_dir):
      entries.append({'name': name, 'kind': StorageKind.SANDBOX.value, 'location': self.sandbox.describe()})
    external = self.external_storage()
    if external is not None and external.handle.is_live(self.store):
      for name in await self._matching(external, ''):
        entries.append({'name': name, 'kind': StorageKind.EXTERNAL.value, 'location': external.describe()})
    entries.sort(key=lambda entry: entry['name'], reverse=True)
    return entries

  async def _matching(self, storage: FileStorage, relative: str) -> List[str]:
    try:
      names = await storage.list_entries(relative)
    except NotFound:
      return []
    return [name for name in names if name.startswith('backup_') and name.endswith('.json')]

  async def self_test(self) -> List[SelfTestResult]:
    targets: List[FileStorage] = [self.sandbox]
    external = self.external_storage()
    if external is not None:
      targets.append(external)
    results = []
    for storage in targets:
      try:
        await self._write_read_delete(storage)
      except BackupError as exc:
        logger.warning('Storage self-test failed for %s: %s', storage.describe(), exc)
        results.append(SelfTestResult(storage.kind, storage.describe(), ok=False, error=exc))
      else:
        results.append(SelfTestResult(storage.kind, storage.describe(), ok=True))
    return results

  async def _write_read_delete(self, storage: FileStorage) -> None:
    directory = self.backup_dir if storage.kind is StorageKind.SANDBOX else ''
    await storage.ensure_directory(directory)
    name = f'{SELF_TEST_PREFIX}{uuid.uuid4().hex}.json'
    relative = f'{directory}/{name}' if directory else name
    expected = {'marker': name, 'writtenAt': utc_now().isoformat()}
    await storage.write_json(relative, expected)
    try:
      actual = await storage.read_json(relative)
      if actual != expected:
        raise StorageUnavailable(f'{storage.describe()} returned different content than was written')
    finally:
      await storage.delete(relative)
    logger.debug('Storage self-test passed for %s', storage.describe())
