from __future__ import annotations

import json

import pytest

from techtrace.backup.dataset import InMemoryDataset, JsonDatasetRepository
from techtrace.backup.errors import ConfigurationError, NotFound, PermissionRevoked, StorageUnavailable, ValidationError
from techtrace.backup.local import LocalBackupManager, merge_settings
from techtrace.backup.models import StorageKind
from techtrace.reports.generator import HtmlSummaryRenderer
from techtrace.storage.adapter import ExternalDirectoryHandle

from conftest import FIXED_NOW

pytestmark = pytest.mark.anyio

EXPECTED_NAME = 'backup_2024-03-05T14-30-15-250Z.json'


class ExplodingRenderer:
  suffix = '.html'

  def render(self, snapshot):
    raise RuntimeError('renderer unavailable')


async def test_create_writes_validated_snapshot(manager, dataset, sandbox):
  created = await manager.create_backup(dataset)

  path = sandbox.root() / 'backups' / EXPECTED_NAME
  assert created.filename == EXPECTED_NAME
  assert path.exists()
  payload = json.loads(path.read_text(encoding='utf-8'))
  assert payload['schemaVersion'] == '2.0.0'
  assert payload['createdAt'] == '2024-03-05T14:30:15.250Z'
  assert payload['metadata'] == {
    'recordCount': 2,
    'totals': {'awValue': 16.5},
    'exportDate': '2024-03-05T14:30:15.250Z',
    'appVersion': '1.2.3'
  }
  assert payload['settings']['isAuthenticated'] is False
  assert created.external.status == 'skipped'


async def test_create_never_overwrites_existing_backup(manager, dataset, sandbox):
  first = await manager.create_backup(dataset)
  second = await manager.create_backup(dataset)

  assert first.filename != second.filename
  assert second.filename > first.filename
  assert len(list((sandbox.root() / 'backups').glob('backup_*.json'))) == 2


async def test_create_rejects_records_that_fail_validation(manager, sandbox):
  broken = InMemoryDataset(records=[{'id': 'job-1', 'awValue': 2}])

  with pytest.raises(ValidationError):
    await manager.create_backup(broken)
  assert list((sandbox.root() / 'backups').glob('backup_*')) == []


async def test_companion_summary_is_written(sandbox, store, dataset):
  manager = LocalBackupManager(sandbox, store, report_renderer=HtmlSummaryRenderer(), clock=lambda: FIXED_NOW)

  created = await manager.create_backup(dataset)

  html = (sandbox.root() / 'backups' / 'backup_2024-03-05T14-30-15-250Z.html').read_text(encoding='utf-8')
  assert created.companion is not None
  assert '2024-03' in html and 'job-1' in html


async def test_companion_failure_does_not_abort_backup(sandbox, store, dataset):
  manager = LocalBackupManager(sandbox, store, report_renderer=ExplodingRenderer(), clock=lambda: FIXED_NOW)

  created = await manager.create_backup(dataset)

  assert created.companion is None
  assert 'renderer unavailable' in created.companion_error
  assert (sandbox.root() / 'backups' / EXPECTED_NAME).exists()


async def test_create_copies_to_live_external_directory(manager, dataset, store, external_dir):
  await manager.configure_external_directory(external_dir)

  created = await manager.create_backup(dataset)

  assert created.external.status == 'copied'
  assert (external_dir / EXPECTED_NAME).exists()


async def test_revoked_external_directory_does_not_undo_sandbox_write(manager, dataset, sandbox, external_dir):
  await manager.configure_external_directory(external_dir)
  storage = manager.external_storage()
  # The user removed the folder the grant points at.
  external_dir.rmdir()

  with pytest.raises(PermissionRevoked):
    await storage.write_json(EXPECTED_NAME, {})

  created = await manager.create_backup(dataset)

  assert (sandbox.root() / 'backups' / EXPECTED_NAME).exists()
  assert created.external.status == 'failed'
  assert isinstance(created.external.error, PermissionRevoked)
  assert created.as_dict()['external']['error_type'] == 'PermissionRevoked'


async def test_regranted_folder_makes_held_handle_stale(manager, store, external_dir):
  await manager.configure_external_directory(external_dir)
  storage = manager.external_storage()
  ExternalDirectoryHandle.grant(external_dir, store)

  with pytest.raises(PermissionRevoked):
    await storage.write_json(EXPECTED_NAME, {})
  assert manager.external_storage().handle.is_live(store) is True


async def test_import_previews_without_mutation(manager, dataset, tmp_path):
  incoming = {
    'schemaVersion': '2.0.0',
    'createdAt': '2024-03-06T00:00:00.000Z',
    'records': [
      {'id': 'job-1', 'updatedAt': '2024-03-02T08:00:00.000Z', 'awValue': 20},
      {'id': 'job-2', 'updatedAt': '2024-01-01T00:00:00.000Z'},
      {'id': 'job-3', 'updatedAt': '2024-03-03T00:00:00.000Z'}
    ],
    'settings': {'theme': 'light'},
    'metadata': {'recordCount': 3}
  }
  source = tmp_path / 'picked.json'
  source.write_text(json.dumps(incoming), encoding='utf-8')
  before = await dataset.load_records()

  preview = await manager.import_backup(dataset, source)

  assert preview.diff.summary() == {'created': 1, 'updated': 1, 'unchanged': 1}
  assert await dataset.load_records() == before
  assert preview.as_dict()['record_count'] == 3


async def test_import_without_source_picks_latest_sandbox_backup(manager, sandbox, dataset):
  await sandbox.ensure_directory('backups')
  older = {'schemaVersion': '2.0.0', 'createdAt': '2024-01-01T00:00:00Z', 'records': [], 'metadata': {}}
  newer = {**older, 'createdAt': '2024-02-01T00:00:00Z'}
  await sandbox.write_json('backups/backup_2024-01-01T00-00-00-000Z.json', older)
  await sandbox.write_json('backups/backup_2024-02-01T00-00-00-000Z.json', newer)

  preview = await manager.import_backup(dataset)

  assert preview.snapshot.created_at == '2024-02-01T00:00:00Z'


async def test_import_prefers_live_external_directory(manager, sandbox, dataset, external_dir):
  await manager.create_backup(dataset)
  await manager.configure_external_directory(external_dir)
  external_payload = {'schemaVersion': '2.0.0', 'createdAt': '2023-01-01T00:00:00Z', 'records': [], 'metadata': {}}
  (external_dir / 'backup_2023-01-01T00-00-00-000Z.json').write_text(json.dumps(external_payload), encoding='utf-8')

  preview = await manager.import_backup(dataset)

  assert preview.snapshot.created_at == '2023-01-01T00:00:00Z'
  assert preview.source.startswith(str(external_dir.resolve()))


async def test_import_with_no_backups_is_not_found(manager, dataset):
  with pytest.raises(NotFound):
    await manager.import_backup(dataset)


async def test_import_rejects_invalid_file_before_diff(manager, dataset, tmp_path):
  source = tmp_path / 'bad.json'
  source.write_text(json.dumps({'records': [], 'metadata': {}}), encoding='utf-8')

  with pytest.raises(ValidationError) as excinfo:
    await manager.import_backup(dataset, source)
  assert excinfo.value.field == 'schemaVersion'


async def test_import_accepts_export_that_predates_schema_version(manager, dataset, tmp_path):
  source = tmp_path / 'techtrace_backup_2023-11-02.json'
  source.write_text(json.dumps({
    'version': '1.0.0',
    'timestamp': '2023-11-02T10:00:00.000Z',
    'jobs': [{'id': 'job-7', 'wipNumber': '55555', 'awValue': 6, 'dateCreated': '2023-10-01T10:00:00.000Z'}],
    'settings': {'theme': 'light'},
    'metadata': {'totalJobs': 1, 'totalAWs': 6, 'exportDate': '2023-11-02T10:00:00.000Z', 'appVersion': '1.0.0'}
  }), encoding='utf-8')

  preview = await manager.import_backup(dataset, source)

  assert preview.legacy is True
  assert preview.diff.summary() == {'created': 1, 'updated': 0, 'unchanged': 0}


async def test_import_against_undated_local_record_keeps_it(manager, tmp_path):
  dataset = InMemoryDataset(records=[{'id': 'job-1', 'awValue': 2}], settings={})
  source = tmp_path / 'incoming.json'
  source.write_text(json.dumps({
    'schemaVersion': '2.0.0',
    'createdAt': '2024-03-06T00:00:00.000Z',
    'records': [{'id': 'job-1', 'updatedAt': '2024-03-02T08:00:00.000Z', 'awValue': 9}],
    'metadata': {'recordCount': 1}
  }), encoding='utf-8')

  preview = await manager.import_backup(dataset, source)
  outcome = await manager.merge_backup(preview.snapshot, dataset)

  assert preview.diff.summary() == {'created': 0, 'updated': 0, 'unchanged': 1}
  assert outcome.stats.unchanged == 1
  assert await dataset.load_records() == [{'id': 'job-1', 'awValue': 2}]


async def test_merge_applies_last_write_wins_and_settings(manager, dataset, tmp_path):
  incoming = {
    'schemaVersion': '2.0.0',
    'createdAt': '2024-03-06T00:00:00.000Z',
    'records': [
      {'id': 'job-1', 'updatedAt': '2024-03-02T08:00:00.000Z', 'awValue': 20},
      {'id': 'job-3', 'updatedAt': '2024-03-03T00:00:00.000Z'}
    ],
    'settings': {'theme': 'light', 'isAuthenticated': False, 'biometricEnabled': False},
    'metadata': {'recordCount': 2}
  }
  source = tmp_path / 'picked.json'
  source.write_text(json.dumps(incoming), encoding='utf-8')
  preview = await manager.import_backup(dataset, source)

  outcome = await manager.merge_backup(preview.snapshot, dataset)

  records = {record['id']: record for record in await dataset.load_records()}
  assert outcome.stats.as_dict() == {'created': 1, 'updated': 1, 'unchanged': 0}
  assert set(records) == {'job-1', 'job-2', 'job-3'}
  assert records['job-1']['awValue'] == 20
  settings = await dataset.load_settings()
  assert settings == {'theme': 'light', 'isAuthenticated': True, 'biometricEnabled': True}
  assert outcome.settings_restored is True


async def test_merge_persists_through_json_dataset(manager, tmp_path):
  repository = JsonDatasetRepository(tmp_path / 'dataset.json')
  await repository.save_records([{'id': 'a', 'updatedAt': '2024-01-01T00:00:00Z'}])
  source = tmp_path / 'incoming.json'
  source.write_text(json.dumps({
    'schemaVersion': '1.0.0',
    'timestamp': '2024-02-01T00:00:00Z',
    'jobs': [{'id': 'b', 'dateModified': '2024-01-15T00:00:00Z'}],
    'metadata': {'totalJobs': 1}
  }), encoding='utf-8')

  preview = await manager.import_backup(repository, source)
  await manager.merge_backup(preview.snapshot, repository)

  stored = json.loads((tmp_path / 'dataset.json').read_text(encoding='utf-8'))
  assert preview.legacy is True
  assert [record['id'] for record in stored['records']] == ['a', 'b']


def test_merge_settings_keeps_device_local_keys():
  local = {'theme': 'dark', 'isAuthenticated': True}
  incoming = {'theme': 'light', 'isAuthenticated': False, 'biometricEnabled': True, 'language': 'en'}

  assert merge_settings(local, incoming) == {'theme': 'light', 'isAuthenticated': True, 'language': 'en'}


async def test_self_test_covers_sandbox_and_external(manager, external_dir, sandbox):
  await manager.configure_external_directory(external_dir)

  results = await manager.self_test()

  assert [(result.kind, result.ok) for result in results] == [(StorageKind.SANDBOX, True), (StorageKind.EXTERNAL, True)]
  assert list(external_dir.iterdir()) == []
  assert list((sandbox.root() / 'backups').iterdir()) == []


async def test_self_test_reports_revoked_external(manager, external_dir, store):
  await manager.configure_external_directory(external_dir)
  external_dir.rmdir()

  results = await manager.self_test()

  assert results[0].ok is True
  assert results[1].ok is False
  assert isinstance(results[1].error, PermissionRevoked)


async def test_configure_rejects_unusable_directory(manager, store, tmp_path):
  with pytest.raises(StorageUnavailable):
    await manager.configure_external_directory(tmp_path / 'missing')
  assert manager.describe_location().kind == StorageKind.SANDBOX


async def test_configure_requires_platform_support(sandbox, store, external_dir):
  manager = LocalBackupManager(sandbox, store, external_supported=False)

  with pytest.raises(ConfigurationError):
    await manager.configure_external_directory(external_dir)


async def test_describe_and_clear_location(manager, external_dir):
  await manager.configure_external_directory(external_dir)
  assert manager.describe_location().as_dict() == {
    'kind': 'external',
    'location': str(external_dir.resolve()),
    'live': True
  }

  assert manager.clear_external_directory() == str(external_dir.resolve())
  assert manager.describe_location().kind == StorageKind.SANDBOX
  assert manager.clear_external_directory() is None


async def test_list_backups_newest_first(manager, dataset, sandbox):
  await sandbox.ensure_directory('backups')
  await sandbox.write_json('backups/backup_2024-01-01T00-00-00-000Z.json', {})
  await manager.create_backup(dataset)

  names = [entry['name'] for entry in await manager.list_backups()]

  assert names == [EXPECTED_NAME, 'backup_2024-01-01T00-00-00-000Z.json']
