from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from cachetools import TTLCache

from techtrace.backup.dataset import DatasetRepository
from techtrace.backup.errors import (
  AuthFailed,
  BackupError,
  ConfigurationError,
  MalformedData,
  NetworkTransient,
  NotFound,
  OperationCancelled,
  PermissionRevoked,
  RemoteRequestError,
  StorageUnavailable,
  TokenExpired,
  ValidationError
)
from techtrace.backup.local import ImportPreview, LocalBackupManager
from techtrace.backup.models import OperationResult
from techtrace.backup.remote import AuthorizationPrompt, DriveBackupClient
from techtrace.logging.event_logger import EventLogger

logger = logging.getLogger(__name__)

Outcome = Tuple[str, Any]

PREVIEW_TTL_SECONDS = 1800
MAX_PENDING_PREVIEWS = 32


def describe_error(exc: BaseException) -> Tuple[str, str]:
  """Map an error to ``(error_code, user-facing message)``."""
  if isinstance(exc, PermissionRevoked):
    return 'permission_revoked', 'Storage permission was revoked. Please reselect the backup folder.'
  if isinstance(exc, StorageUnavailable):
    return 'storage_unavailable', f'Backup storage is unavailable ({exc}). Check the storage location or choose another folder.'
  if isinstance(exc, ValidationError):
    return 'validation_error', f'The backup is invalid: field "{exc.field}" {exc.reason}.'
  if isinstance(exc, MalformedData):
    return 'malformed_data', f'The backup could not be read: {exc}.'
  if isinstance(exc, TokenExpired):
    return 'token_expired', 'Your Google Drive session has expired. Please sign in again.'
  if isinstance(exc, AuthFailed):
    return 'auth_failed', f'Google Drive sign-in failed: {exc} Please sign in again.'
  if isinstance(exc, NetworkTransient):
    return (
      'network_transient',
      f'Google Drive is temporarily unavailable (gave up after {exc.attempts or 1} attempts). Please try again later.'
    )
  if isinstance(exc, NotFound):
    return 'not_found', f'Not found: {exc}'
  if isinstance(exc, RemoteRequestError):
    return 'remote_rejected', f'Google Drive rejected the request: {exc}'
  if isinstance(exc, ConfigurationError):
    return 'configuration_error', str(exc)
  if isinstance(exc, OperationCancelled):
    return 'cancelled', 'The operation was cancelled.'
  return 'internal_error', 'An unexpected error occurred. See the logs for details.'


class BackupOrchestrator:
  """Entry points for every user-facing backup action.

  Each method returns an ``OperationResult`` and never raises: typed errors from
  the components below are translated by ``describe_error``. Import previews wait
  here, keyed by id, until the user confirms or discards them; unanswered ones
  expire after ``preview_ttl`` seconds and only the newest ``max_previews`` are kept.
  """

  def __init__(
    self,
    local: LocalBackupManager,
    remote: DriveBackupClient,
    dataset: DatasetRepository,
    event_logger: Optional[EventLogger] = None,
    preview_ttl: float = PREVIEW_TTL_SECONDS,
    max_previews: int = MAX_PENDING_PREVIEWS,
    timer: Callable[[], float] = time.monotonic
  ) -> None:
    self.local = local
    self.remote = remote
    self.dataset = dataset
    self.event_logger = event_logger
    self._previews: TTLCache = TTLCache(maxsize=max_previews, ttl=preview_ttl, timer=timer)

  async def _run(
    self,
    operation: str,
    action: Callable[[], Awaitable[Outcome]],
    failure_data: Optional[Dict[str, Any]] = None
  ) -> OperationResult:
    try:
      message, data = await action()
    except Exception as exc:
      if isinstance(exc, BackupError):
        logger.warning('%s failed: %s', operation, exc)
      else:
        logger.exception('%s failed unexpectedly', operation)
      code, message = describe_error(exc)
      result = OperationResult(success=False, message=message, data={'error': code, **(failure_data or {})})
      self._record(operation, result, type(exc).__name__)
      return result
    result = OperationResult(success=True, message=message, data=data)
    self._record(operation, result)
    return result

  def _record(self, operation: str, result: OperationResult, error: Optional[str] = None) -> None:
    if self.event_logger is None:
      return
    try:
      self.event_logger.log_operation(operation, result.success, result.message, error)
    except OSError as exc:
      logger.warning('Could not record %s in the event log: %s', operation, exc)

  def _hold(self, preview: ImportPreview) -> Dict[str, Any]:
    preview_id = uuid.uuid4().hex
    self._previews[preview_id] = preview
    return {'preview_id': preview_id, **preview.as_dict()}

  @staticmethod
  def _preview_message(preview: ImportPreview) -> str:
    counts = preview.diff.summary()
    message = (
      f'Backup from {preview.snapshot.created_at} contains {preview.snapshot.record_count} records: '
      f'{counts["created"]} new, {counts["updated"]} updated, {counts["unchanged"]} unchanged. Confirm to merge.'
    )
    if preview.warnings:
      message += ' ' + ' '.join(preview.warnings)
    return message

  # Local ------------------------------------------------------------------------

  async def backup_now(self) -> OperationResult:
    async def action() -> Outcome:
      created = await self.local.create_backup(self.dataset)
      message = f'Backup saved as {created.filename} ({created.snapshot.record_count} records).'
      if created.companion_error:
        message += ' The summary document could not be written.'
      external = created.external
      if external.status == 'copied':
        message += f' Copied to {external.location}.'
      elif external.status == 'failed' and external.error is not None:
        message += f' The copy to the external folder failed: {describe_error(external.error)[1]}'
      return message, created.as_dict()

    return await self._run('backup_now', action)

  async def list_local_backups(self) -> OperationResult:
    async def action() -> Outcome:
      backups = await self.local.list_backups()
      return f'{len(backups)} backups found.', {'backups': backups}

    return await self._run('list_local_backups', action)

  async def preview_restore_from_file(self, path: Optional[Path] = None) -> OperationResult:
    async def action() -> Outcome:
      preview = await self.local.import_backup(self.dataset, path)
      return self._preview_message(preview), self._hold(preview)

    return await self._run('preview_restore', action)

  async def confirm_restore(self, preview_id: str) -> OperationResult:
    async def action() -> Outcome:
      preview = self._previews.pop(preview_id, None)
      if preview is None:
        raise NotFound(f'import preview {preview_id} (it may have expired or already been applied)')
      outcome = await self.local.merge_backup(preview.snapshot, self.dataset)
      stats = outcome.stats
      message = f'Restore complete: {stats.created} new, {stats.updated} updated, {stats.unchanged} unchanged.'
      return message, {'source': preview.source, **outcome.as_dict()}

    return await self._run('confirm_restore', action)

  def discard_preview(self, preview_id: str) -> OperationResult:
    if self._previews.pop(preview_id, None) is None:
      return OperationResult(success=False, message=f'Not found: import preview {preview_id}', data={'error': 'not_found'})
    return OperationResult(success=True, message='Import cancelled; nothing was changed.')

  async def test_storage(self) -> OperationResult:
    # Filled in before a failure is raised so the failed result still lists every location.
    data: Dict[str, Any] = {}

    async def action() -> Outcome:
      results = await self.local.self_test()
      data['results'] = [result.as_dict() for result in results]
      failed = [result for result in results if not result.ok]
      if failed:
        raise failed[0].error or StorageUnavailable(f'{failed[0].location} failed the self-test')
      return 'Storage test passed for all backup locations.', data

    return await self._run('test_storage', action, data)

  async def configure_storage(self, path: Path) -> OperationResult:
    async def action() -> Outcome:
      location = await self.local.configure_external_directory(path)
      return f'Backups will also be saved to {location.location}.', location.as_dict()

    return await self._run('configure_storage', action)

  async def clear_storage(self) -> OperationResult:
    async def action() -> Outcome:
      previous = self.local.clear_external_directory()
      location = self.local.describe_location()
      if previous is None:
        return 'No external backup folder was configured.', location.as_dict()
      return f'Stopped saving backups to {previous}.', location.as_dict()

    return await self._run('clear_storage', action)

  async def storage_location(self) -> OperationResult:
    async def action() -> Outcome:
      location = self.local.describe_location()
      if not location.live:
        return 'The backup folder needs to be reselected; its permission was revoked.', location.as_dict()
      return f'Backups are saved to {location.location}.', location.as_dict()

    return await self._run('storage_location', action)

  # Cloud ------------------------------------------------------------------------

  async def configure_cloud(self, client_id: str, client_secret: Optional[str] = None) -> OperationResult:
    async def action() -> Outcome:
      config = self.remote.configure(client_id, client_secret)
      return 'Google Drive client saved.', {'client_id': config.client_id}

    return await self._run('configure_cloud', action)

  async def cloud_status(self) -> OperationResult:
    async def action() -> Outcome:
      data = {
        'configured': self.remote.config is not None,
        'authenticated': self.remote.is_authenticated,
        'state': self.remote.state.value
      }
      message = 'Signed in to Google Drive.' if self.remote.is_authenticated else 'Not signed in to Google Drive.'
      return message, data

    return await self._run('cloud_status', action)

  async def start_cloud_authorization(self) -> OperationResult:
    async def action() -> Outcome:
      request = self.remote.start_authorization()
      return 'Open the link to authorize Google Drive access.', {'auth_url': request.url, 'state': request.state}

    return await self._run('start_cloud_authorization', action)

  async def complete_cloud_authorization(
    self,
    state: str,
    code: Optional[str],
    error: Optional[str] = None,
    cancel: Optional[asyncio.Event] = None
  ) -> OperationResult:
    async def action() -> Outcome:
      if error:
        self.remote.abort_authorization(state)
        raise AuthFailed(f'Authorization failed: {error}.')
      await self.remote.complete_authorization(state, code or '', cancel)
      return 'Connected to Google Drive.', {'state': self.remote.state.value}

    return await self._run('complete_cloud_authorization', action)

  async def connect_cloud(self, prompt: AuthorizationPrompt, cancel: Optional[asyncio.Event] = None) -> OperationResult:
    async def action() -> Outcome:
      await self.remote.authenticate(prompt, cancel)
      return 'Connected to Google Drive.', {'state': self.remote.state.value}

    return await self._run('connect_cloud', action)

  async def disconnect_cloud(self) -> OperationResult:
    async def action() -> Outcome:
      await self.remote.sign_out()
      return 'Signed out of Google Drive.', {'state': self.remote.state.value}

    return await self._run('disconnect_cloud', action)

  async def backup_to_cloud(self, cancel: Optional[asyncio.Event] = None) -> OperationResult:
    async def action() -> Outcome:
      snapshot = await self.local.build_snapshot(self.dataset)
      uploaded = await self.remote.upload_snapshot(snapshot, cancel=cancel)
      message = f'Uploaded {uploaded.name} to Google Drive ({snapshot.record_count} records).'
      return message, {**uploaded.as_dict(), 'record_count': snapshot.record_count}

    return await self._run('backup_to_cloud', action)

  async def list_cloud_backups(self, cancel: Optional[asyncio.Event] = None) -> OperationResult:
    async def action() -> Outcome:
      files = await self.remote.list_backups(cancel)
      return f'{len(files)} backups found on Google Drive.', {'backups': [item.as_dict() for item in files]}

    return await self._run('list_cloud_backups', action)

  async def preview_restore_from_cloud(
    self,
    file_id: Optional[str] = None,
    cancel: Optional[asyncio.Event] = None
  ) -> OperationResult:
    async def action() -> Outcome:
      target_id, label = file_id, file_id
      if target_id is None:
        files = await self.remote.list_backups(cancel)
        if not files:
          raise NotFound('no backups were found on Google Drive')
        # Listing is ordered newest first.
        target_id, label = files[0].id, files[0].name
      validated = await self.remote.download_snapshot(target_id, cancel)
      preview = await self.local.preview(validated, f'Google Drive: {label}', self.dataset)
      return self._preview_message(preview), {'file_id': target_id, **self._hold(preview)}

    return await self._run('preview_restore_from_cloud', action)

  async def delete_cloud_backup(self, file_id: str, cancel: Optional[asyncio.Event] = None) -> OperationResult:
    async def action() -> Outcome:
      await self.remote.delete_backup(file_id, cancel)
      return 'Backup deleted from Google Drive.', {'file_id': file_id}

    return await self._run('delete_cloud_backup', action)

  # Misc -------------------------------------------------------------------------

  def recent_events(
    self,
    limit: int = 50,
    operation: Optional[str] = None,
    failures_only: bool = False
  ) -> List[Dict[str, Any]]:
    if self.event_logger is None:
      return []
    return self.event_logger.recent(limit, operation=operation, failures_only=failures_only)

  async def aclose(self) -> None:
    await self.remote.aclose()
