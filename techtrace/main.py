import argparse
import json
from typing import Any, Dict, Optional, Sequence

import uvicorn

from techtrace.config import Settings, settings


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description='HTTP service for TechTrace backups.')
  parser.add_argument('--host', default=settings.backend_host, help='Host interface to bind.')
  parser.add_argument('--port', default=settings.backend_port, type=int, help='Port to serve on.')
  parser.add_argument('--reload', action='store_true', help='Enable autoreload (development only).')
  parser.add_argument('--log-level', default=settings.log_level, help='Uvicorn log level.')
  parser.add_argument(
    '--show-config',
    action='store_true',
    help='Print where backups, settings and secrets will be kept, then exit.'
  )
  return parser.parse_args(argv)


def describe_config(config: Settings) -> Dict[str, Any]:
  # The client secret is reported as present or absent, never printed.
  return {
    'sandbox_dir': str(config.sandbox_dir),
    'backup_folder': config.backup_folder,
    'dataset_path': str(config.dataset_path),
    'settings_db_path': str(config.settings_db_path),
    'secret_key_path': str(config.secret_key_path),
    'events_dir': str(config.events_dir),
    'external_storage_supported': config.external_storage_supported,
    'drive_folder_name': config.drive_folder_name,
    'drive_client_id': config.drive_client_id,
    'drive_client_secret_set': bool(config.drive_client_secret),
    'oauth_redirect_uri': config.oauth_redirect_uri,
    'retry_attempts': config.retry_attempts,
    'retry_base_delay_seconds': config.retry_base_delay_seconds
  }


def main(argv: Optional[Sequence[str]] = None) -> None:
  args = parse_args(argv)
  if args.show_config:
    print(json.dumps(describe_config(settings), indent=2))
    return
  uvicorn.run(
    'techtrace.api.app:create_app',
    factory=True,
    host=args.host,
    port=args.port,
    log_level=args.log_level,
    reload=args.reload
  )


if __name__ == '__main__':
  main()
