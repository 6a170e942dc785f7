from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from techtrace.backup.errors import (
  AuthFailed,
  ConfigurationError,
  NetworkTransient,
  NotFound,
  OperationCancelled,
  RemoteRequestError,
  TokenExpired
)
from techtrace.backup.models import (
  BackupSnapshot,
  RemoteBackupFile,
  RemoteSession,
  ValidationResult,
  parse_timestamp,
  snapshot_filename
)
from techtrace.backup.retry import RetryPolicy, check_cancelled, is_retryable_status
from techtrace.backup.schema import validate_snapshot
from techtrace.storage.adapter import decode_json
from techtrace.storage.settings_store import (
  DRIVE_CONFIG_KEY,
  DRIVE_FOLDER_KEY,
  DRIVE_SESSION_KEY,
  KeyValueStore
)

logger = logging.getLogger(__name__)

PLACEHOLDER_CLIENT_IDS = {'YOUR_GOOGLE_CLIENT_ID', 'changeme'}
RATE_LIMIT_REASONS = {'rateLimitExceeded', 'userRateLimitExceeded'}


class AuthState(str, Enum):
  UNAUTHENTICATED = 'unauthenticated'
  AUTHENTICATING = 'authenticating'
  AUTHENTICATED = 'authenticated'
  TOKEN_EXPIRING = 'token_expiring'
  REFRESHING = 'refreshing'
  SIGNED_OUT = 'signed_out'


@dataclass
class DriveConfig:
  client_id: str
  client_secret: Optional[str] = None

  @classmethod
  def load(cls, store: KeyValueStore) -> Optional['DriveConfig']:
    data = store.get(DRIVE_CONFIG_KEY)
    if not isinstance(data, dict) or not data.get('client_id'):
      return None
    return cls(client_id=data['client_id'], client_secret=data.get('client_secret'))

  def to_dict(self) -> Dict[str, Any]:
    return {'client_id': self.client_id, 'client_secret': self.client_secret}


@dataclass
class AuthorizationRequest:
  url: str
  state: str
  code_verifier: str
  redirect_uri: str


@dataclass
class AuthorizationResponse:
  code: Optional[str] = None
  state: Optional[str] = None
  error: Optional[str] = None


# Shows the consent URL to the user and resolves with the redirect parameters,
# or None when the user dismissed the flow.
AuthorizationPrompt = Callable[[str, str], Awaitable[Optional[AuthorizationResponse]]]


def _code_challenge(verifier: str) -> str:
  digest = hashlib.sha256(verifier.encode('ascii')).digest()
  return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')


def _quote_query_value(value: str) -> str:
  return value.replace('\\', '\\\\').replace("'", "\\'")


def _error_details(response: httpx.Response) -> tuple[str, Optional[str]]:
  try:
    body = response.json()
  except ValueError:
    return response.text[:200] or response.reason_phrase, None
  error = body.get('error') if isinstance(body, dict) else None
  if isinstance(error, dict):
    reasons = [item.get('reason') for item in error.get('errors', []) if isinstance(item, dict)]
    return error.get('message') or response.reason_phrase, next((r for r in reasons if r), None)
  if isinstance(error, str):
    return body.get('error_description') or error, error
  return response.reason_phrase, None


async def _cancellable(awaitable: Awaitable[Any], cancel: Optional[asyncio.Event], label: str) -> Any:
  if cancel is None:
    return await awaitable
  task = asyncio.ensure_future(awaitable)
  waiter = asyncio.ensure_future(cancel.wait())
  try:
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
  finally:
    waiter.cancel()
  if task in done:
    return task.result()
  task.cancel()
  raise OperationCancelled(f'{label} was cancelled')


class DriveBackupClient:
  """Google Drive client for snapshot upload, listing, download and deletion.

  Tokens live in the injected settings store. Access tokens are refreshed
  proactively inside ``refresh_margin_seconds`` of expiry, and at most once
  reactively per request when the service answers 401. Every remote call runs
  under ``retry_policy``.
  """

  AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
  TOKEN_URL = 'https://oauth2.googleapis.com/token'
  REVOKE_URL = 'https://oauth2.googleapis.com/revoke'
  FILES_URL = 'https://www.googleapis.com/drive/v3/files'
  UPLOAD_URL = 'https://www.googleapis.com/upload/drive/v3/files'
  SCOPE = 'https://www.googleapis.com/auth/drive.file'
  FOLDER_MIME = 'application/vnd.google-apps.folder'
  FILE_FIELDS = 'id,name,createdTime,modifiedTime,size'

  def __init__(
    self,
    store: KeyValueStore,
    redirect_uri: str,
    folder_name: str = 'TechTrace Backups',
    retry_policy: Optional[RetryPolicy] = None,
    refresh_margin_seconds: float = 300.0,
    timeout: float = 60.0,
    http_client: Optional[httpx.AsyncClient] = None,
    default_config: Optional[DriveConfig] = None,
    clock: Callable[[], float] = time.time
  ) -> None:
    self.store = store
    self.redirect_uri = redirect_uri
    self.folder_name = folder_name
    self.retry_policy = retry_policy or RetryPolicy()
    self.refresh_margin_seconds = refresh_margin_seconds
    self.default_config = default_config
    self.clock = clock
    self._owns_client = http_client is None
    self._client = http_client or httpx.AsyncClient(timeout=timeout)
    self._pending: Dict[str, AuthorizationRequest] = {}
    self._folder_id: Optional[str] = None
    self._session = RemoteSession.from_dict(store.get(DRIVE_SESSION_KEY))
    self._state = AuthState.AUTHENTICATED if self._session else AuthState.UNAUTHENTICATED

  @property
  def state(self) -> AuthState:
    return self._state

  @property
  def is_authenticated(self) -> bool:
    return self._session is not None

  @property
  def config(self) -> Optional[DriveConfig]:
    return DriveConfig.load(self.store) or self.default_config

  def configure(self, client_id: str, client_secret: Optional[str] = None) -> DriveConfig:
    client_id = (client_id or '').strip()
    if not client_id or client_id in PLACEHOLDER_CLIENT_IDS:
      raise ConfigurationError('A Google OAuth client id is required.')
    config = DriveConfig(client_id=client_id, client_secret=(client_secret or '').strip() or None)
    self.store.set(DRIVE_CONFIG_KEY, config.to_dict())
    return config

  def _require_config(self) -> DriveConfig:
    config = self.config
    if not config or config.client_id in PLACEHOLDER_CLIENT_IDS:
      raise ConfigurationError('Google Drive is not configured; set the OAuth client id first.')
    return config

  # Authentication -----------------------------------------------------------

  def start_authorization(self) -> AuthorizationRequest:
    config = self._require_config()
    state = secrets.token_urlsafe(24)
    verifier = secrets.token_urlsafe(64)
    params = {
      'client_id': config.client_id,
      'redirect_uri': self.redirect_uri,
      'response_type': 'code',
      'scope': self.SCOPE,
      'state': state,
      'code_challenge': _code_challenge(verifier),
      'code_challenge_method': 'S256',
      'access_type': 'offline',
      'prompt': 'consent'
    }
    request = AuthorizationRequest(
      url=f'{self.AUTH_URL}?{urlencode(params)}',
      state=state,
      code_verifier=verifier,
      redirect_uri=self.redirect_uri
    )
    self._pending[state] = request
    self._state = AuthState.AUTHENTICATING
    return request

  def abort_authorization(self, state: Optional[str] = None) -> None:
    if state:
      self._pending.pop(state, None)
    else:
      self._pending.clear()
    if self._state == AuthState.AUTHENTICATING and not self._pending:
      self._state = AuthState.AUTHENTICATED if self._session else AuthState.UNAUTHENTICATED

  async def complete_authorization(
    self,
    state: str,
    code: str,
    cancel: Optional[asyncio.Event] = None
  ) -> RemoteSession:
    request = self._pending.pop(state, None)
    if request is None:
      raise AuthFailed('Authorization state is unknown or expired.')
    if not code:
      self.abort_authorization(state)
      raise AuthFailed('Authorization response did not include a code.')
    config = self._require_config()
    data = {
      'code': code,
      'client_id': config.client_id,
      'redirect_uri': request.redirect_uri,
      'grant_type': 'authorization_code',
      'code_verifier': request.code_verifier
    }
    if config.client_secret:
      data['client_secret'] = config.client_secret
    try:
      payload = await self._token_request(data, 'authorization code exchange', cancel)
      access_token = payload.get('access_token')
      refresh_token = payload.get('refresh_token')
      if not access_token or not refresh_token:
        raise AuthFailed('Google token exchange did not return refresh/access tokens.')
    except Exception:
      self._state = AuthState.AUTHENTICATED if self._session else AuthState.UNAUTHENTICATED
      raise
    session = RemoteSession(
      access_token=access_token,
      refresh_token=refresh_token,
      expires_at=self.clock() + float(payload.get('expires_in', 3600))
    )
    self._store_session(session)
    self._folder_id = None
    self._state = AuthState.AUTHENTICATED
    logger.info('Google Drive authorization completed')
    return session

  async def authenticate(
    self,
    prompt: AuthorizationPrompt,
    cancel: Optional[asyncio.Event] = None
  ) -> RemoteSession:
    request = self.start_authorization()
    try:
      response = await _cancellable(prompt(request.url, request.state), cancel, 'authorization')
    except BaseException:
      self.abort_authorization(request.state)
      raise
    if response is None:
      self.abort_authorization(request.state)
      raise AuthFailed('Authorization was cancelled.')
    if response.error:
      self.abort_authorization(request.state)
      raise AuthFailed(f'Authorization failed: {response.error}')
    if response.state != request.state:
      self.abort_authorization(request.state)
      raise AuthFailed('Authorization state mismatch.')
    return await self.complete_authorization(request.state, response.code or '', cancel)

  async def access_token(self, cancel: Optional[asyncio.Event] = None) -> str:
    if self._session is None:
      raise AuthFailed('Not signed in to Google Drive.')
    if self._session.expires_within(self.refresh_margin_seconds, self.clock()):
      self._state = AuthState.TOKEN_EXPIRING
      await self.refresh(cancel)
    return self._session.access_token

  async def refresh(self, cancel: Optional[asyncio.Event] = None) -> RemoteSession:
    session = self._session
    if session is None:
      raise AuthFailed('Not signed in to Google Drive.')
    if not session.refresh_token:
      self._drop_session(AuthState.UNAUTHENTICATED)
      raise TokenExpired('The Google Drive session has no refresh token.')
    config = self._require_config()
    data = {
      'client_id': config.client_id,
      'refresh_token': session.refresh_token,
      'grant_type': 'refresh_token'
    }
    if config.client_secret:
      data['client_secret'] = config.client_secret
    self._state = AuthState.REFRESHING
    try:
      payload = await self._token_request(data, 'token refresh', cancel)
    except AuthFailed as exc:
      self._drop_session(AuthState.UNAUTHENTICATED)
      raise TokenExpired(f'Google Drive session could not be refreshed: {exc}') from exc
    except BaseException:
      self._state = AuthState.AUTHENTICATED
      raise
    if not payload.get('access_token'):
      self._drop_session(AuthState.UNAUTHENTICATED)
      raise TokenExpired('Token refresh did not return an access token.')
    refreshed = RemoteSession(
      access_token=payload['access_token'],
      refresh_token=payload.get('refresh_token') or session.refresh_token,
      expires_at=self.clock() + float(payload.get('expires_in', 3600))
    )
    self._store_session(refreshed)
    self._state = AuthState.AUTHENTICATED
    logger.info('Refreshed Google Drive access token')
    return refreshed

  async def sign_out(self) -> None:
    session = self._session
    if session is not None:
      token = session.refresh_token or session.access_token
      try:
        response = await self._client.post(self.REVOKE_URL, data={'token': token})
        if response.status_code >= 400:
          logger.warning('Token revocation returned HTTP %s', response.status_code)
      except httpx.HTTPError as exc:
        logger.warning('Token revocation failed: %s', exc)
    self._drop_session(AuthState.SIGNED_OUT)
    self.store.clear(DRIVE_FOLDER_KEY)
    self._pending.clear()
    logger.info('Signed out of Google Drive')

  def _store_session(self, session: RemoteSession) -> None:
    self._session = session
    self.store.set(DRIVE_SESSION_KEY, session.to_dict())

  def _drop_session(self, state: AuthState) -> None:
    self._session = None
    self._folder_id = None
    self.store.clear(DRIVE_SESSION_KEY)
    self._state = state

  async def _token_request(
    self,
    data: Dict[str, str],
    label: str,
    cancel: Optional[asyncio.Event]
  ) -> Dict[str, Any]:
    async def attempt() -> Dict[str, Any]:
      try:
        response = await _cancellable(self._client.post(self.TOKEN_URL, data=data), cancel, label)
      except httpx.TransportError as exc:
        raise NetworkTransient(f'{label} could not reach Google: {exc}') from exc
      if response.is_success:
        return response.json()
      message, _ = _error_details(response)
      if is_retryable_status(response.status_code):
        raise NetworkTransient(f'{label} returned HTTP {response.status_code}: {message}', response.status_code)
      raise AuthFailed(f'{label} was rejected: {message}')

    return await self.retry_policy.run(attempt, label=label, cancel=cancel)

  # Remote calls -------------------------------------------------------------

  async def _request(
    self,
    method: str,
    url: str,
    label: str,
    cancel: Optional[asyncio.Event] = None,
    **kwargs: Any
  ) -> httpx.Response:
    # Token calls carry their own retry budget, so they stay outside the retried send.
    check_cancelled(cancel, label)
    token = await self.access_token(cancel)
    response = await self._send_with_retry(method, url, token, label, cancel, allow_unauthorized=True, **kwargs)
    if response.status_code != 401:
      return response
    logger.info('%s was rejected with HTTP 401; refreshing the access token once', label)
    session = await self.refresh(cancel)
    return await self._send_with_retry(method, url, session.access_token, label, cancel, **kwargs)

  async def _send_with_retry(
    self,
    method: str,
    url: str,
    token: str,
    label: str,
    cancel: Optional[asyncio.Event],
    allow_unauthorized: bool = False,
    **kwargs: Any
  ) -> httpx.Response:
    async def attempt() -> httpx.Response:
      response = await self._send(method, url, token, label, cancel, **kwargs)
      if allow_unauthorized and response.status_code == 401:
        return response
      return self._check(response, label)

    return await self.retry_policy.run(attempt, label=label, cancel=cancel)

  async def _send(
    self,
    method: str,
    url: str,
    token: str,
    label: str,
    cancel: Optional[asyncio.Event],
    **kwargs: Any
  ) -> httpx.Response:
    headers = dict(kwargs.pop('headers', None) or {})
    headers['Authorization'] = f'Bearer {token}'
    try:
      return await _cancellable(self._client.request(method, url, headers=headers, **kwargs), cancel, label)
    except httpx.TransportError as exc:
      raise NetworkTransient(f'{label} could not reach Google Drive: {exc}') from exc

  def _check(self, response: httpx.Response, label: str) -> httpx.Response:
    if response.is_success:
      return response
    status = response.status_code
    message, reason = _error_details(response)
    if is_retryable_status(status) or (status == 403 and reason in RATE_LIMIT_REASONS):
      raise NetworkTransient(f'{label} returned HTTP {status}: {message}', status)
    if status == 401:
      raise AuthFailed(f'{label} was rejected by Google Drive: {message}')
    if status == 404:
      raise NotFound(f'{label}: remote object not found')
    raise RemoteRequestError(f'{label} returned HTTP {status}: {message}', status)

  async def ensure_folder(self, cancel: Optional[asyncio.Event] = None) -> str:
    if self._folder_id:
      return self._folder_id

    stored = self.store.get(DRIVE_FOLDER_KEY)
    if stored:
      try:
        response = await self._request(
          'GET',
          f'{self.FILES_URL}/{stored}',
          'folder lookup',
          cancel,
          params={'fields': 'id,name,trashed'}
        )
        if not response.json().get('trashed'):
          self._folder_id = stored
          return stored
      except NotFound:
        logger.info('Cached Drive folder %s no longer exists; searching again', stored)
      self.store.clear(DRIVE_FOLDER_KEY)

    query = (
      f"name='{_quote_query_value(self.folder_name)}' and mimeType='{self.FOLDER_MIME}' and trashed=false"
    )
    response = await self._request(
      'GET',
      self.FILES_URL,
      'folder search',
      cancel,
      params={'q': query, 'fields': 'files(id,name)', 'pageSize': 1, 'spaces': 'drive'}
    )
    files = response.json().get('files', [])
    if files:
      folder_id = files[0]['id']
    else:
      created = await self._request(
        'POST',
        self.FILES_URL,
        'folder creation',
        cancel,
        json={'name': self.folder_name, 'mimeType': self.FOLDER_MIME},
        params={'fields': 'id'}
      )
      folder_id = created.json()['id']
      logger.info('Created Google Drive folder %r', self.folder_name)
    self._folder_id = folder_id
    self.store.set(DRIVE_FOLDER_KEY, folder_id)
    return folder_id

  async def upload_snapshot(
    self,
    snapshot: BackupSnapshot,
    filename: Optional[str] = None,
    cancel: Optional[asyncio.Event] = None
  ) -> RemoteBackupFile:
    payload = snapshot.to_payload()
    validate_snapshot(payload)
    folder_id = await self.ensure_folder(cancel)
    name = filename or snapshot_filename(parse_timestamp(snapshot.created_at))
    metadata = {
      'name': name,
      'parents': [folder_id],
      'mimeType': 'application/json',
      'description': f'TechTrace backup created {snapshot.created_at} ({snapshot.record_count} records)'
    }
    boundary = f'techtrace-{uuid.uuid4().hex}'
    response = await self._request(
      'POST',
      self.UPLOAD_URL,
      'backup upload',
      cancel,
      params={'uploadType': 'multipart', 'fields': self.FILE_FIELDS},
      headers={'Content-Type': f'multipart/related; boundary={boundary}'},
      content=build_multipart_body(metadata, payload, boundary)
    )
    uploaded = RemoteBackupFile.from_api(response.json())
    logger.info('Uploaded backup %s to Google Drive (%s)', uploaded.name, uploaded.id)
    return uploaded

  async def list_backups(self, cancel: Optional[asyncio.Event] = None) -> List[RemoteBackupFile]:
    folder_id = await self.ensure_folder(cancel)
    query = f"'{folder_id}' in parents and mimeType='application/json' and trashed=false"
    files: List[RemoteBackupFile] = []
    page_token: Optional[str] = None
    while True:
      params: Dict[str, Any] = {
        'q': query,
        'fields': f'nextPageToken,files({self.FILE_FIELDS})',
        'orderBy': 'modifiedTime desc',
        'pageSize': 100
      }
      if page_token:
        params['pageToken'] = page_token
      response = await self._request('GET', self.FILES_URL, 'backup listing', cancel, params=params)
      body = response.json()
      files.extend(RemoteBackupFile.from_api(item) for item in body.get('files', []))
      page_token = body.get('nextPageToken')
      if not page_token:
        return files

  async def download_snapshot(self, file_id: str, cancel: Optional[asyncio.Event] = None) -> ValidationResult:
    response = await self._request(
      'GET',
      f'{self.FILES_URL}/{file_id}',
      'backup download',
      cancel,
      params={'alt': 'media'}
    )
    # Remote content is untrusted until it passes validation.
    return validate_snapshot(decode_json(response.content, f'remote backup {file_id}'))

  async def delete_backup(self, file_id: str, cancel: Optional[asyncio.Event] = None) -> None:
    await self._request('DELETE', f'{self.FILES_URL}/{file_id}', 'backup deletion', cancel)
    logger.info('Deleted Google Drive backup %s', file_id)

  async def aclose(self) -> None:
    if self._owns_client:
      await self._client.aclose()


def build_multipart_body(metadata: Dict[str, Any], payload: Dict[str, Any], boundary: str) -> bytes:
  parts = [
    f'--{boundary}',
    'Content-Type: application/json; charset=UTF-8',
    '',
    json.dumps(metadata),
    f'--{boundary}',
    'Content-Type: application/json; charset=UTF-8',
    '',
    json.dumps(payload, indent=2, ensure_ascii=False),
    f'--{boundary}--',
    ''
  ]
  return '\r\n'.join(parts).encode('utf-8')
