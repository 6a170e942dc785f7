from __future__ import annotations

from typing import Dict, Iterator, List, Sequence, Set, Tuple

from techtrace.backup.models import (
  DiffResult,
  MergeResult,
  MergeStats,
  Record,
  record_id,
  record_updated_at
)

CREATED = 'created'
UPDATED = 'updated'
UNCHANGED = 'unchanged'


def _index(records: Sequence[Record]) -> Dict[str, Record]:
  return {record_id(record): record for record in records}


def _is_newer(incoming: Record, existing: Record) -> bool:
  try:
    return record_updated_at(incoming) > record_updated_at(existing)
  except ValueError:
    # A copy without a usable timestamp never displaces the other; the local one stays.
    return False


def _classify(current: Dict[str, Record], incoming: Sequence[Record]) -> Iterator[Tuple[str, Record]]:
  # Mutates ``current`` as it goes; equal timestamps keep the local copy.
  for record in incoming:
    key = record_id(record)
    existing = current.get(key)
    if existing is None:
      current[key] = record
      yield CREATED, record
    elif _is_newer(record, existing):
      current[key] = record
      yield UPDATED, record
    else:
      yield UNCHANGED, record


def diff_records(local: Sequence[Record], incoming: Sequence[Record]) -> DiffResult:
  """Partition ``incoming`` into created, updated and unchanged records relative to ``local``."""
  result = DiffResult()
  for outcome, record in _classify(_index(local), incoming):
    getattr(result, outcome).append(record)
  return result


def merge_records(local: Sequence[Record], incoming: Sequence[Record]) -> MergeResult:
  """Last-write-wins union of two record sets.

  Local records are never dropped. A replaced record keeps its local position and
  new records are appended in incoming order.
  """
  current = _index(local)
  stats = MergeStats()
  for outcome, _ in _classify(current, incoming):
    setattr(stats, outcome, getattr(stats, outcome) + 1)

  merged: List[Record] = []
  seen: Set[str] = set()
  for record in list(local) + list(incoming):
    key = record_id(record)
    if key in seen:
      continue
    seen.add(key)
    merged.append(current[key])
  return MergeResult(records=merged, stats=stats)
