from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 512 * 1024


class EventLogger:
  """JSON-lines history of user-facing backup operations.

  ``events.log`` is moved to ``events.log.1`` once it grows past ``max_bytes``;
  only that one older generation is kept, and ``recent`` reads across both.
  """

  def __init__(self, base_dir: Path, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
    self.base_dir = Path(base_dir)
    self.base_dir.mkdir(parents=True, exist_ok=True)
    self.log_file = self.base_dir / 'events.log'
    self.rotated_file = self.base_dir / 'events.log.1'
    self.max_bytes = max_bytes

  def log_operation(self, operation: str, success: bool, message: str, error: Optional[str] = None) -> None:
    payload: Dict[str, Any] = {'operation': operation, 'success': success}
    if error:
      payload['error'] = error
    entry = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'category': 'backup',
      'message': message,
      'payload': payload
    }
    self._rotate_if_full()
    with self.log_file.open('a', encoding='utf-8') as handle:
      handle.write(json.dumps(entry) + '\n')

  def _rotate_if_full(self) -> None:
    if self.log_file.exists() and self.log_file.stat().st_size >= self.max_bytes:
      self.log_file.replace(self.rotated_file)

  def _entries(self) -> Iterator[Dict[str, Any]]:
    for path in (self.rotated_file, self.log_file):
      if not path.exists():
        continue
      for line in path.read_text(encoding='utf-8').splitlines():
        try:
          yield json.loads(line)
        except json.JSONDecodeError:
          logger.warning('Malformed event log line in %s: %s', path.name, line)

  def recent(
    self,
    limit: int = 200,
    operation: Optional[str] = None,
    failures_only: bool = False
  ) -> List[Dict[str, Any]]:
    """Newest ``limit`` entries, oldest first, optionally narrowed to one operation or to failures."""
    matches = []
    for entry in self._entries():
      payload = entry.get('payload') or {}
      if operation and payload.get('operation') != operation:
        continue
      if failures_only and payload.get('success', True):
        continue
      matches.append(entry)
    return matches[-limit:] if limit > 0 else []
