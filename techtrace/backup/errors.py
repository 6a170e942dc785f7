from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
  """Base class for every failure raised by the backup subsystem."""


class StorageUnavailable(BackupError):
  """The sandbox or external directory rejected a file system operation."""


class PermissionRevoked(StorageUnavailable):
  """The external directory grant is no longer live and must be reconfigured."""


class NotFound(BackupError):
  """A requested file or remote object does not exist."""


class MalformedData(BackupError):
  """Bytes could not be decoded or parsed as JSON."""


class ValidationError(BackupError):
  """A payload does not match the backup schema; ``field`` names the offending path."""

  def __init__(self, field: str, reason: str) -> None:
    super().__init__(f'{field}: {reason}')
    self.field = field
    self.reason = reason


class ConfigurationError(BackupError):
  """Required configuration is missing or unusable."""


class AuthFailed(BackupError):
  """Remote authentication could not be established."""


class TokenExpired(AuthFailed):
  """The remote session could not be refreshed and needs a new sign-in."""


class NetworkTransient(BackupError):
  """Rate limiting, server-side or transport failure; safe to retry."""

  def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 0) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.attempts = attempts


class RemoteRequestError(BackupError):
  """The remote service refused the request permanently."""

  def __init__(self, message: str, status_code: Optional[int] = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class OperationCancelled(BackupError):
  """The caller cancelled the operation."""
