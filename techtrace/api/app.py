import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from techtrace.api.globals import build_orchestrator
from techtrace.api.routes import backups
from techtrace.backup.facade import BackupOrchestrator
from techtrace.config import settings

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[BackupOrchestrator] = None) -> FastAPI:
  app = FastAPI(
    title='TechTrace Backup Service',
    version=settings.app_version,
    description='Local and Google Drive backup, restore and storage management for TechTrace job data.'
  )
  app.state.orchestrator = orchestrator or build_orchestrator(settings)

  # CORS
  app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
  )

  # Global Exception Handler
  @app.exception_handler(Exception)
  async def global_exception_handler(request: Request, exc: Exception):
    logger.error('Unhandled exception on %s: %s', request.url.path, exc, exc_info=True)
    return JSONResponse(
      status_code=500,
      content={'success': False, 'message': 'Internal Server Error'}
    )

  app.include_router(backups.router, tags=['Backups'])

  @app.on_event('startup')
  async def startup_event() -> None:
    logger.info('Backup service started on %s:%s', settings.backend_host, settings.backend_port)

  @app.on_event('shutdown')
  async def shutdown_event() -> None:
    await app.state.orchestrator.aclose()

  @app.get('/')
  async def root():
    return {'message': f'TechTrace Backup Service v{settings.app_version}'}

  return app
