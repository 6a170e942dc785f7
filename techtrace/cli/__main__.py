from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from techtrace.config import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.WARNING))
logger = logging.getLogger(__name__)


def build_orchestrator():
  from techtrace.api.globals import build_orchestrator as build
  return build(settings)


def parse_global_args() -> argparse.ArgumentParser:
  common = argparse.ArgumentParser(add_help=False)
  common.add_argument('--json', action='store_true', help='Print the raw result as JSON.')

  parser = argparse.ArgumentParser(prog='techtrace-backup', description='TechTrace backup and restore CLI')
  sub = parser.add_subparsers(dest='command', required=True)

  sub.add_parser('backup', parents=[common], help='Write a backup to the sandbox (and the external folder)')
  sub.add_parser('list', parents=[common], help='List local backups, newest first')

  p_import = sub.add_parser('import', parents=[common], help='Preview and merge a backup file')
  p_import.add_argument('--file', help='Backup file; defaults to the latest backup')
  p_import.add_argument('--yes', action='store_true', help='Merge without asking for confirmation')

  sub.add_parser('test-storage', parents=[common], help='Write, read back and delete a test file in every location')

  p_storage = sub.add_parser('configure-storage', parents=[common], help='Use an external folder for backups')
  p_storage.add_argument('--path', required=True)

  sub.add_parser('clear-storage', parents=[common], help='Stop using the external folder')

  p_cloud = sub.add_parser('cloud-config', parents=[common], help='Save the Google Drive OAuth client')
  p_cloud.add_argument('--client-id', required=True)
  p_cloud.add_argument('--client-secret')

  sub.add_parser('cloud-login', parents=[common], help='Sign in to Google Drive')
  sub.add_parser('cloud-logout', parents=[common], help='Sign out of Google Drive')
  sub.add_parser('cloud-backup', parents=[common], help='Upload a backup to Google Drive')
  sub.add_parser('cloud-list', parents=[common], help='List Google Drive backups')

  p_restore = sub.add_parser('cloud-restore', parents=[common], help='Preview and merge a Google Drive backup')
  p_restore.add_argument('--file-id', help='Drive file id; defaults to the newest backup')
  p_restore.add_argument('--yes', action='store_true', help='Merge without asking for confirmation')

  p_delete = sub.add_parser('cloud-delete', parents=[common], help='Delete a Google Drive backup')
  p_delete.add_argument('--file-id', required=True)

  p_events = sub.add_parser('events', parents=[common], help='Show recent backup operations')
  p_events.add_argument('--limit', type=int, default=20)
  p_events.add_argument('--operation', help='Only show one operation, e.g. backup_now')
  p_events.add_argument('--failed', action='store_true', help='Only show failed operations')

  return parser


def emit(result, as_json: bool) -> int:
  if as_json:
    print(json.dumps(result.as_dict(), indent=2))
  else:
    stream = sys.stdout if result.success else sys.stderr
    print(result.message, file=stream)
  return 0 if result.success else 1


def _print_listing(result, key: str, as_json: bool) -> int:
  if as_json or not result.success:
    return emit(result, as_json)
  print(result.message)
  for entry in result.data.get(key, []):
    details = ', '.join(f'{name}={value}' for name, value in entry.items() if name != 'name' and value is not None)
    print(f"  {entry.get('name')}  ({details})")
  return 0


async def prompt_for_redirect(url: str, state: str):
  from techtrace.backup.remote import AuthorizationResponse
  print('Open this URL in a browser and authorize access:')
  print(f'  {url}')
  pasted = await asyncio.to_thread(input, 'Paste the full redirect URL (empty to cancel): ')
  pasted = pasted.strip()
  if not pasted:
    return None
  query = parse_qs(urlparse(pasted).query)

  def first(name: str) -> Optional[str]:
    return (query.get(name) or [None])[0]

  return AuthorizationResponse(code=first('code'), state=first('state'), error=first('error'))


async def _confirm_preview(orchestrator, preview, assume_yes: bool, as_json: bool) -> int:
  if not preview.success:
    return emit(preview, as_json)
  if not as_json:
    print(preview.message)
  if not assume_yes:
    answer = await asyncio.to_thread(input, 'Merge this backup into the current data? [y/N] ')
    if answer.strip().lower() not in ('y', 'yes'):
      return emit(orchestrator.discard_preview(preview.data['preview_id']), as_json)
  return emit(await orchestrator.confirm_restore(preview.data['preview_id']), as_json)


async def run_command(orchestrator, ns: argparse.Namespace) -> int:
  cmd = ns.command
  as_json = ns.json
  if cmd == 'backup':
    return emit(await orchestrator.backup_now(), as_json)
  if cmd == 'list':
    return _print_listing(await orchestrator.list_local_backups(), 'backups', as_json)
  if cmd == 'import':
    source: Optional[Path] = Path(ns.file) if ns.file else None
    preview = await orchestrator.preview_restore_from_file(source)
    return await _confirm_preview(orchestrator, preview, ns.yes, as_json)
  if cmd == 'test-storage':
    return emit(await orchestrator.test_storage(), as_json)
  if cmd == 'configure-storage':
    return emit(await orchestrator.configure_storage(Path(ns.path)), as_json)
  if cmd == 'clear-storage':
    return emit(await orchestrator.clear_storage(), as_json)
  if cmd == 'cloud-config':
    return emit(await orchestrator.configure_cloud(ns.client_id, ns.client_secret), as_json)
  if cmd == 'cloud-login':
    return emit(await orchestrator.connect_cloud(prompt_for_redirect), as_json)
  if cmd == 'cloud-logout':
    return emit(await orchestrator.disconnect_cloud(), as_json)
  if cmd == 'cloud-backup':
    return emit(await orchestrator.backup_to_cloud(), as_json)
  if cmd == 'cloud-list':
    return _print_listing(await orchestrator.list_cloud_backups(), 'backups', as_json)
  if cmd == 'cloud-restore':
    preview = await orchestrator.preview_restore_from_cloud(ns.file_id)
    return await _confirm_preview(orchestrator, preview, ns.yes, as_json)
  if cmd == 'cloud-delete':
    return emit(await orchestrator.delete_cloud_backup(ns.file_id), as_json)
  if cmd == 'events':
    events = orchestrator.recent_events(ns.limit, operation=ns.operation, failures_only=ns.failed)
    if as_json:
      print(json.dumps({'events': events}, indent=2))
    else:
      for entry in events:
        payload: dict[str, Any] = entry.get('payload') or {}
        status = 'ok' if payload.get('success') else 'failed'
        print(f"{entry.get('timestamp')}  {payload.get('operation', '?'):<28} {status:<6} {entry.get('message')}")
    return 0
  return 1


async def _main(ns: argparse.Namespace) -> int:
  orchestrator = build_orchestrator()
  try:
    return await run_command(orchestrator, ns)
  finally:
    await orchestrator.aclose()


def main() -> int:
  parser = parse_global_args()
  ns = parser.parse_args()
  return asyncio.run(_main(ns))


if __name__ == '__main__':
  raise SystemExit(main())
