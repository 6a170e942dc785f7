from __future__ import annotations

from collections import OrderedDict
from html import escape
from typing import Dict, List, Protocol

from techtrace.backup.models import BackupSnapshot, Record, parse_timestamp, record_timestamp_value


class ReportRenderer(Protocol):
  """Renders the human-readable companion document for a validated snapshot."""

  suffix: str

  def render(self, snapshot: BackupSnapshot) -> bytes:
    ...


def _month_key(record: Record) -> str:
  value = record.get('dateCreated') or record_timestamp_value(record)
  try:
    return parse_timestamp(value).strftime('%Y-%m')
  except (TypeError, ValueError):
    return 'Undated'


def group_by_month(records: List[Record]) -> Dict[str, List[Record]]:
  groups: Dict[str, List[Record]] = {}
  for record in records:
    groups.setdefault(_month_key(record), []).append(record)
  return OrderedDict(sorted(groups.items(), reverse=True))


class HtmlSummaryRenderer:
  suffix = '.html'

  def __init__(self, columns: tuple = ('id', 'wipNumber', 'vehicleRegistration', 'awValue', 'updatedAt')) -> None:
    self.columns = columns

  def render(self, snapshot: BackupSnapshot) -> bytes:
    metadata = snapshot.metadata
    totals = metadata.get('totals') or {}
    html = '<html><head><meta charset="utf-8"><title>TechTrace Backup</title></head><body>'
    html += f'<h1>Backup summary {escape(snapshot.created_at)}</h1>'
    html += f'<p>Schema: {escape(snapshot.schema_version)}</p>'
    html += f'<p>Records: {snapshot.record_count}</p>'
    for name, value in totals.items():
      html += f'<p>Total {escape(str(name))}: {escape(str(value))}</p>'
    html += f'<p>App version: {escape(str(metadata.get("appVersion", "unknown")))}</p>'
    for month, records in group_by_month(snapshot.records).items():
      html += f'<h2>{escape(month)} ({len(records)})</h2>'
      html += '<table><tr>' + ''.join(f'<th>{escape(col)}</th>' for col in self.columns) + '</tr>'
      for record in records:
        cells = ''.join(f'<td>{escape(str(record.get(col, "")))}</td>' for col in self.columns)
        html += f'<tr>{cells}</tr>'
      html += '</table>'
    html += '</body></html>'
    return html.encode('utf-8')
