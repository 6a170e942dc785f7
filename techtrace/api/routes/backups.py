from html import escape
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from techtrace.api.globals import get_orchestrator
from techtrace.backup.facade import BackupOrchestrator
from techtrace.backup.models import OperationResult

router = APIRouter(prefix='/backups')

ERROR_STATUS = {
  'permission_revoked': 409,
  'storage_unavailable': 503,
  'validation_error': 422,
  'malformed_data': 422,
  'token_expired': 401,
  'auth_failed': 401,
  'network_transient': 503,
  'not_found': 404,
  'remote_rejected': 502,
  'configuration_error': 400,
  'cancelled': 409,
  'internal_error': 500
}


class ImportPayload(BaseModel):
  path: Optional[str] = Field(default=None, description='Backup file to import; the latest backup when omitted.')


class StoragePayload(BaseModel):
  path: str


class CloudConfigPayload(BaseModel):
  client_id: str
  client_secret: Optional[str] = None


class CloudRestorePayload(BaseModel):
  file_id: Optional[str] = None


def respond(result: OperationResult) -> JSONResponse:
  status = 200
  if not result.success:
    code = (result.data or {}).get('error', 'internal_error')
    status = ERROR_STATUS.get(code, 500)
  return JSONResponse(status_code=status, content=result.as_dict())


@router.post('')
async def create_backup(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.backup_now())


@router.get('')
async def list_backups(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.list_local_backups())


@router.post('/import')
async def preview_import(
  payload: ImportPayload,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
  source = Path(payload.path) if payload.path else None
  return respond(await orchestrator.preview_restore_from_file(source))


@router.post('/import/{preview_id}/confirm')
async def confirm_import(preview_id: str, orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.confirm_restore(preview_id))


@router.delete('/import/{preview_id}')
async def discard_import(preview_id: str, orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(orchestrator.discard_preview(preview_id))


@router.get('/storage')
async def storage_location(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.storage_location())


@router.put('/storage')
async def configure_storage(
  payload: StoragePayload,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
  return respond(await orchestrator.configure_storage(Path(payload.path)))


@router.delete('/storage')
async def clear_storage(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.clear_storage())


@router.post('/storage/test')
async def test_storage(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.test_storage())


@router.get('/cloud')
async def cloud_status(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.cloud_status())


@router.put('/cloud/config')
async def configure_cloud(
  payload: CloudConfigPayload,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
  return respond(await orchestrator.configure_cloud(payload.client_id, payload.client_secret))


@router.post('/cloud/oauth/start')
async def start_cloud_oauth(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.start_cloud_authorization())


@router.get('/cloud/oauth/callback', response_class=HTMLResponse)
async def complete_cloud_oauth(
  state: Optional[str] = None,
  code: Optional[str] = None,
  error: Optional[str] = None,
  error_description: Optional[str] = None,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> HTMLResponse:
  if not state:
    content = '<html><body><h1>Authorization failed</h1><p>Missing OAuth state parameter.</p></body></html>'
    return HTMLResponse(content=content, status_code=400)
  result = await orchestrator.complete_cloud_authorization(state, code, error_description or error)
  if not result.success:
    content = f'<html><body><h1>Authorization failed</h1><p>{escape(result.message)}</p></body></html>'
    return HTMLResponse(content=content, status_code=400)
  content = (
    '<html><body><h1>Google Drive connected</h1>'
    '<p>You may close this window.</p>'
    '<script>setTimeout(() => window.close(), 1500);</script>'
    '</body></html>'
  )
  return HTMLResponse(content=content)


@router.post('/cloud/signout')
async def sign_out(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.disconnect_cloud())


@router.post('/cloud/backups')
async def upload_backup(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.backup_to_cloud())


@router.get('/cloud/backups')
async def list_cloud_backups(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.list_cloud_backups())


@router.post('/cloud/restore')
async def preview_cloud_restore(
  payload: CloudRestorePayload,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> JSONResponse:
  return respond(await orchestrator.preview_restore_from_cloud(payload.file_id))


@router.delete('/cloud/backups/{file_id}')
async def delete_cloud_backup(file_id: str, orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
  return respond(await orchestrator.delete_cloud_backup(file_id))


@router.get('/events')
async def recent_events(
  limit: int = Query(default=50, ge=1, le=500),
  operation: Optional[str] = None,
  failed: bool = False,
  orchestrator: BackupOrchestrator = Depends(get_orchestrator)
) -> Dict[str, List[Dict[str, Any]]]:
  return {'events': orchestrator.recent_events(limit, operation=operation, failures_only=failed)}
