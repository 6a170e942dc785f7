from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from techtrace.backup.errors import NetworkTransient, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_retryable_status(status_code: int) -> bool:
  return status_code == 429 or 500 <= status_code < 600


def check_cancelled(cancel: Optional[asyncio.Event], label: str) -> None:
  if cancel is not None and cancel.is_set():
    raise OperationCancelled(f'{label} was cancelled')


@dataclass
class RetryPolicy:
  """Bounded exponential backoff applied to every remote call.

  Only ``NetworkTransient`` failures are retried. The delay before attempt
  ``n + 1`` is ``base_delay * 2 ** (n - 1)``, capped at ``max_delay``.
  """

  max_attempts: int = 3
  base_delay: float = 1.0
  max_delay: float = 30.0
  sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

  def __post_init__(self) -> None:
    if self.max_attempts < 1:
      raise ValueError('max_attempts must be at least 1')
    if self.base_delay < 0:
      raise ValueError('base_delay may not be negative')

  def delay_for(self, attempt: int) -> float:
    return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

  async def run(
    self,
    operation: Callable[[], Awaitable[T]],
    label: str = 'remote call',
    cancel: Optional[asyncio.Event] = None
  ) -> T:
    attempt = 0
    while True:
      check_cancelled(cancel, label)
      attempt += 1
      try:
        return await operation()
      except NetworkTransient as exc:
        exc.attempts = attempt
        if attempt >= self.max_attempts:
          logger.warning('%s failed after %s attempts: %s', label, attempt, exc)
          raise
        delay = self.delay_for(attempt)
        logger.warning(
          '%s attempt %s/%s failed (%s); retrying in %.1fs',
          label,
          attempt,
          self.max_attempts,
          exc,
          delay
        )
        await self.sleep(delay)
