from fastapi import Request

from techtrace.backup.dataset import JsonDatasetRepository
from techtrace.backup.facade import BackupOrchestrator
from techtrace.backup.local import LocalBackupManager
from techtrace.backup.remote import DriveBackupClient, DriveConfig
from techtrace.backup.retry import RetryPolicy
from techtrace.config import Settings
from techtrace.logging.event_logger import EventLogger
from techtrace.reports.generator import HtmlSummaryRenderer
from techtrace.security.secret_manager import SecretManager
from techtrace.storage.adapter import SandboxStorage
from techtrace.storage.settings_store import SqliteSettingsStore


def build_orchestrator(config: Settings) -> BackupOrchestrator:
  config.ensure_directories()
  secret_manager = SecretManager(config.secret_key_path)
  store = SqliteSettingsStore(config.settings_db_path, secret_manager)
  local = LocalBackupManager(
    sandbox=SandboxStorage(config.sandbox_dir),
    store=store,
    backup_dir=config.backup_folder,
    app_version=config.app_version,
    report_renderer=HtmlSummaryRenderer(),
    external_supported=config.external_storage_supported
  )
  default_config = None
  if config.drive_client_id:
    default_config = DriveConfig(client_id=config.drive_client_id, client_secret=config.drive_client_secret)
  remote = DriveBackupClient(
    store=store,
    redirect_uri=config.oauth_redirect_uri,
    folder_name=config.drive_folder_name,
    retry_policy=RetryPolicy(
      max_attempts=config.retry_attempts,
      base_delay=config.retry_base_delay_seconds
    ),
    refresh_margin_seconds=config.token_refresh_margin_seconds,
    timeout=config.request_timeout_seconds,
    default_config=default_config
  )
  return BackupOrchestrator(
    local=local,
    remote=remote,
    dataset=JsonDatasetRepository(config.dataset_path),
    event_logger=EventLogger(config.events_dir)
  )


def get_orchestrator(request: Request) -> BackupOrchestrator:
  return request.app.state.orchestrator
