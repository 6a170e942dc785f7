from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

_DATA_DIR = Path(os.getenv('TECHTRACE_DATA_DIR', './data')).resolve()


@dataclass
class Settings:
  """Global backup service configuration derived from environment variables."""

  backend_host: str = os.getenv('TECHTRACE_HOST', '127.0.0.1')
  backend_port: int = int(os.getenv('TECHTRACE_PORT', '6120'))
  log_level: str = os.getenv('TECHTRACE_LOG_LEVEL', 'info')
  data_dir: Path = _DATA_DIR
  sandbox_dir: Path = Path(os.getenv('TECHTRACE_SANDBOX_DIR', str(_DATA_DIR / 'sandbox'))).resolve()
  dataset_path: Path = Path(os.getenv('TECHTRACE_DATASET_PATH', str(_DATA_DIR / 'dataset.json'))).resolve()
  settings_db_path: Path = Path(os.getenv('TECHTRACE_SETTINGS_DB', str(_DATA_DIR / 'settings.db'))).resolve()
  secret_key_path: Path = Path(os.getenv('TECHTRACE_SECRET_KEY_PATH', str(_DATA_DIR / 'secrets' / 'fernet.key'))).resolve()
  backup_folder: str = os.getenv('TECHTRACE_BACKUP_FOLDER', 'backups')
  external_storage_supported: bool = os.getenv('TECHTRACE_EXTERNAL_STORAGE', 'true').lower() == 'true'
  drive_client_id: Optional[str] = os.getenv('TECHTRACE_DRIVE_CLIENT_ID')
  drive_client_secret: Optional[str] = os.getenv('TECHTRACE_DRIVE_CLIENT_SECRET')
  drive_folder_name: str = os.getenv('TECHTRACE_DRIVE_FOLDER', 'TechTrace Backups')
  token_refresh_margin_seconds: float = float(os.getenv('TECHTRACE_TOKEN_REFRESH_MARGIN', '300'))
  retry_attempts: int = int(os.getenv('TECHTRACE_RETRY_ATTEMPTS', '3'))
  retry_base_delay_seconds: float = float(os.getenv('TECHTRACE_RETRY_BASE_DELAY', '1.0'))
  request_timeout_seconds: float = float(os.getenv('TECHTRACE_REQUEST_TIMEOUT', '60'))
  app_version: str = os.getenv('TECHTRACE_APP_VERSION', '1.0.0')

  @property
  def oauth_redirect_uri(self) -> str:
    return f'http://{self.backend_host}:{self.backend_port}/backups/cloud/oauth/callback'

  @property
  def events_dir(self) -> Path:
    return self.data_dir / 'logs'

  def ensure_directories(self) -> None:
    self.data_dir.mkdir(parents=True, exist_ok=True)
    self.sandbox_dir.mkdir(parents=True, exist_ok=True)
    if not self.settings_db_path.parent.exists():
      self.settings_db_path.parent.mkdir(parents=True, exist_ok=True)
    if not self.secret_key_path.parent.exists():
      self.secret_key_path.parent.mkdir(parents=True, exist_ok=True)


settings = Settings()
