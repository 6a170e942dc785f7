from __future__ import annotations

import json

import httpx
import pytest

from techtrace.backup.errors import (
  AuthFailed,
  ConfigurationError,
  MalformedData,
  NetworkTransient,
  NotFound,
  PermissionRevoked,
  StorageUnavailable,
  TokenExpired,
  ValidationError
)
from techtrace.backup.facade import BackupOrchestrator, describe_error
from techtrace.backup.remote import AuthorizationResponse, DriveBackupClient
from techtrace.logging.event_logger import EventLogger
from techtrace.storage.settings_store import DRIVE_CONFIG_KEY, DRIVE_SESSION_KEY

from test_remote_client import FILES, FOLDER_SEARCH, LISTING, NOW, TOKEN, UPLOAD, VALID_PAYLOAD, FakeDrive, reply

pytestmark = pytest.mark.anyio


@pytest.fixture()
def drive() -> FakeDrive:
  return FakeDrive()


@pytest.fixture()
def remote(store, drive, retry_policy) -> DriveBackupClient:
  store.set(DRIVE_CONFIG_KEY, {'client_id': 'client-123', 'client_secret': None})
  return DriveBackupClient(
    store,
    redirect_uri='http://127.0.0.1:6120/backups/cloud/oauth/callback',
    retry_policy=retry_policy,
    http_client=httpx.AsyncClient(transport=httpx.MockTransport(drive)),
    clock=lambda: NOW
  )


@pytest.fixture()
def signed_in(store):
  store.set(DRIVE_SESSION_KEY, {'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_at': NOW + 3600})


@pytest.fixture()
def orchestrator(manager, remote, dataset, tmp_path) -> BackupOrchestrator:
  return BackupOrchestrator(manager, remote, dataset, EventLogger(tmp_path / 'logs'))


@pytest.mark.parametrize(
  ('error', 'code', 'fragment'),
  [
    (PermissionRevoked('gone'), 'permission_revoked', 'reselect'),
    (StorageUnavailable('disk full'), 'storage_unavailable', 'disk full'),
    (ValidationError('records[2].id', 'missing'), 'validation_error', 'records[2].id'),
    (MalformedData('file.json is empty'), 'malformed_data', 'file.json is empty'),
    (TokenExpired('refresh rejected'), 'token_expired', 'sign in again'),
    (AuthFailed('cancelled.'), 'auth_failed', 'sign in again'),
    (NetworkTransient('503', 503, attempts=3), 'network_transient', '3 attempts'),
    (NotFound('remote backup'), 'not_found', 'remote backup'),
    (ConfigurationError('Set the client id.'), 'configuration_error', 'Set the client id.'),
    (KeyError('boom'), 'internal_error', 'unexpected')
  ]
)
def test_describe_error_is_specific(error, code, fragment):
  actual_code, message = describe_error(error)

  assert actual_code == code
  assert fragment in message


async def test_backup_now_reports_success(orchestrator, sandbox):
  result = await orchestrator.backup_now()

  assert result.success is True
  assert result.data['record_count'] == 2
  assert result.data['external']['status'] == 'skipped'
  assert 'backup_2024-03-05T14-30-15-250Z.json' in result.message
  assert (sandbox.root() / 'backups' / result.data['filename']).exists()


async def test_backup_now_reports_revoked_external_copy_separately(orchestrator, external_dir):
  configured = await orchestrator.configure_storage(external_dir)
  assert configured.success is True
  external_dir.rmdir()

  result = await orchestrator.backup_now()

  assert result.success is True
  assert result.data['external']['status'] == 'failed'
  assert 'reselect the backup folder' in result.message


async def test_failures_never_raise(orchestrator, tmp_path):
  result = await orchestrator.preview_restore_from_file(tmp_path / 'missing.json')

  assert result.success is False
  assert result.data == {'error': 'not_found'}
  assert result.as_dict()['message'].startswith('Not found')


async def test_unexpected_errors_become_generic_failures(orchestrator, monkeypatch):
  async def broken(dataset):
    raise KeyError('boom')

  monkeypatch.setattr(orchestrator.local, 'create_backup', broken)

  result = await orchestrator.backup_now()

  assert result.success is False
  assert result.data == {'error': 'internal_error'}


async def test_restore_requires_confirmation(orchestrator, dataset, tmp_path):
  source = tmp_path / 'incoming.json'
  payload = dict(VALID_PAYLOAD, records=[{'id': 'job-9', 'updatedAt': '2024-03-04T00:00:00Z'}])
  source.write_text(json.dumps(payload), encoding='utf-8')

  preview = await orchestrator.preview_restore_from_file(source)

  assert preview.success is True
  assert preview.data['diff'] == {'created': 1, 'updated': 0, 'unchanged': 0}
  assert 'job-9' not in [record['id'] for record in dataset.records]

  confirmed = await orchestrator.confirm_restore(preview.data['preview_id'])

  assert confirmed.success is True
  assert confirmed.data['created'] == 1
  assert 'job-9' in [record['id'] for record in dataset.records]

  again = await orchestrator.confirm_restore(preview.data['preview_id'])
  assert again.success is False
  assert again.data == {'error': 'not_found'}


async def test_invalid_file_names_the_field(orchestrator, tmp_path):
  source = tmp_path / 'bad.json'
  source.write_text(json.dumps(dict(VALID_PAYLOAD, metadata='none')), encoding='utf-8')

  result = await orchestrator.preview_restore_from_file(source)

  assert result.success is False
  assert result.data == {'error': 'validation_error'}
  assert '"metadata"' in result.message


async def test_discarded_preview_cannot_be_confirmed(orchestrator, manager, dataset):
  await orchestrator.backup_now()
  preview = await orchestrator.preview_restore_from_file()

  assert orchestrator.discard_preview(preview.data['preview_id']).success is True
  assert (await orchestrator.confirm_restore(preview.data['preview_id'])).success is False


async def test_previews_expire_after_their_ttl(manager, remote, dataset, tmp_path):
  clock = [1000.0]
  orchestrator = BackupOrchestrator(
    manager, remote, dataset, EventLogger(tmp_path / 'logs'), preview_ttl=60, timer=lambda: clock[0]
  )
  await orchestrator.backup_now()
  preview = await orchestrator.preview_restore_from_file()

  clock[0] += 61
  result = await orchestrator.confirm_restore(preview.data['preview_id'])

  assert result.success is False
  assert result.data == {'error': 'not_found'}
  assert 'expired' in result.message


async def test_only_the_newest_previews_are_kept(manager, remote, dataset, tmp_path):
  orchestrator = BackupOrchestrator(manager, remote, dataset, EventLogger(tmp_path / 'logs'), max_previews=2)
  await orchestrator.backup_now()

  first, second, third = [await orchestrator.preview_restore_from_file() for _ in range(3)]

  assert (await orchestrator.confirm_restore(first.data['preview_id'])).data == {'error': 'not_found'}
  assert (await orchestrator.confirm_restore(second.data['preview_id'])).success is True
  assert (await orchestrator.confirm_restore(third.data['preview_id'])).success is True


async def test_storage_entry_points(orchestrator, external_dir, tmp_path):
  assert (await orchestrator.test_storage()).success is True

  bad = await orchestrator.configure_storage(tmp_path / 'missing')
  assert bad.success is False and bad.data == {'error': 'storage_unavailable'}

  configured = await orchestrator.configure_storage(external_dir)
  location = await orchestrator.storage_location()
  assert configured.success and location.data['kind'] == 'external'

  external_dir.rmdir()
  tested = await orchestrator.test_storage()
  assert tested.success is False
  assert tested.data['error'] == 'permission_revoked'
  by_kind = {entry['kind']: entry for entry in tested.data['results']}
  assert by_kind['sandbox']['ok'] is True
  assert by_kind['external']['ok'] is False
  assert by_kind['external']['error_type'] == 'PermissionRevoked'
  assert (await orchestrator.storage_location()).data['live'] is False

  cleared = await orchestrator.clear_storage()
  assert cleared.success is True
  assert cleared.data['kind'] == 'sandbox'


async def test_cloud_backup_retries_and_succeeds(signed_in, orchestrator, drive, sleeps):
  drive.on('GET', FOLDER_SEARCH, reply(200, json={'files': [{'id': 'folder-1'}]}))
  drive.on('POST', UPLOAD, reply(503), reply(200, json={'id': 'file-1', 'name': 'backup_x.json'}))

  result = await orchestrator.backup_to_cloud()

  assert result.success is True
  assert result.data['id'] == 'file-1'
  assert result.data['record_count'] == 2
  assert sleeps == [1.0]


async def test_cloud_backup_surfaces_exhausted_retries(signed_in, orchestrator, drive):
  drive.on('GET', FOLDER_SEARCH, reply(200, json={'files': [{'id': 'folder-1'}]}))
  drive.on('POST', UPLOAD, reply(429))

  result = await orchestrator.backup_to_cloud()

  assert result.success is False
  assert result.data == {'error': 'network_transient'}
  assert '3 attempts' in result.message


async def test_cloud_backup_requires_sign_in(orchestrator):
  result = await orchestrator.backup_to_cloud()

  assert result.success is False
  assert result.data == {'error': 'auth_failed'}


async def test_cloud_restore_defaults_to_newest(signed_in, orchestrator, drive, dataset):
  drive.on('GET', FOLDER_SEARCH, reply(200, json={'files': [{'id': 'folder-1'}]}))
  drive.on('GET', LISTING, reply(200, json={'files': [
    {'id': 'new', 'name': 'backup_2024-03-05.json'},
    {'id': 'old', 'name': 'backup_2024-01-01.json'}
  ]}))
  drive.on('GET', f'{FILES}/new', reply(200, json=VALID_PAYLOAD))

  preview = await orchestrator.preview_restore_from_cloud()

  assert preview.success is True
  assert preview.data['file_id'] == 'new'
  assert preview.data['diff'] == {'created': 0, 'updated': 0, 'unchanged': 1}
  confirmed = await orchestrator.confirm_restore(preview.data['preview_id'])
  assert confirmed.data['unchanged'] == 1


async def test_cloud_restore_with_empty_folder(signed_in, orchestrator, drive):
  drive.on('GET', FOLDER_SEARCH, reply(200, json={'files': [{'id': 'folder-1'}]}))
  drive.on('GET', LISTING, reply(200, json={'files': []}))

  result = await orchestrator.preview_restore_from_cloud()

  assert result.success is False
  assert result.data == {'error': 'not_found'}


async def test_connect_and_disconnect_cloud(orchestrator, drive, store):
  drive.on('POST', TOKEN, reply(200, json={'access_token': 'a', 'refresh_token': 'r', 'expires_in': 3600}))
  drive.on('POST', '/revoke', reply(200))

  async def prompt(url, state):
    return AuthorizationResponse(code='code', state=state)

  connected = await orchestrator.connect_cloud(prompt)
  status = await orchestrator.cloud_status()
  disconnected = await orchestrator.disconnect_cloud()

  assert connected.success is True
  assert status.data == {'configured': True, 'authenticated': True, 'state': 'authenticated'}
  assert disconnected.data == {'state': 'signed_out'}
  assert store.get(DRIVE_SESSION_KEY) is None


async def test_split_cloud_authorization(orchestrator, drive):
  drive.on('POST', TOKEN, reply(200, json={'access_token': 'a', 'refresh_token': 'r', 'expires_in': 3600}))

  started = await orchestrator.start_cloud_authorization()
  denied = await orchestrator.complete_cloud_authorization('unknown', 'code')
  completed = await orchestrator.complete_cloud_authorization(started.data['state'], 'code')

  assert started.data['auth_url'].startswith('https://accounts.google.com/')
  assert denied.success is False and denied.data == {'error': 'auth_failed'}
  assert completed.success is True


async def test_configure_cloud_rejects_placeholder(orchestrator):
  result = await orchestrator.configure_cloud('YOUR_GOOGLE_CLIENT_ID')

  assert result.success is False
  assert result.data == {'error': 'configuration_error'}


async def test_operations_are_recorded_in_event_log(orchestrator, tmp_path):
  await orchestrator.backup_now()
  await orchestrator.preview_restore_from_file(tmp_path / 'missing.json')

  events = orchestrator.recent_events()

  assert [event['payload']['operation'] for event in events] == ['backup_now', 'preview_restore']
  assert events[0]['payload']['success'] is True
  assert events[1]['payload']['error'] == 'NotFound'


async def test_recent_events_can_be_narrowed(orchestrator, tmp_path):
  await orchestrator.backup_now()
  await orchestrator.preview_restore_from_file(tmp_path / 'missing.json')
  await orchestrator.backup_now()

  backups = orchestrator.recent_events(operation='backup_now')
  failures = orchestrator.recent_events(failures_only=True)

  assert len(backups) == 2
  assert [event['payload']['operation'] for event in failures] == ['preview_restore']
