"""Shared fixtures for the backup subsystem tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from techtrace.backup.dataset import InMemoryDataset
from techtrace.backup.local import LocalBackupManager
from techtrace.backup.retry import RetryPolicy
from techtrace.storage.adapter import SandboxStorage
from techtrace.storage.settings_store import MemorySettingsStore

FIXED_NOW = datetime(2024, 3, 5, 14, 30, 15, 250000, tzinfo=timezone.utc)


@pytest.fixture()
def anyio_backend() -> str:
  return 'asyncio'


@pytest.fixture()
def store() -> MemorySettingsStore:
  return MemorySettingsStore()


@pytest.fixture()
def sandbox(tmp_path: Path) -> SandboxStorage:
  root = tmp_path / 'sandbox'
  root.mkdir()
  return SandboxStorage(root)


@pytest.fixture()
def external_dir(tmp_path: Path) -> Path:
  path = tmp_path / 'external'
  path.mkdir()
  return path


@pytest.fixture()
def sleeps() -> List[float]:
  return []


@pytest.fixture()
def retry_policy(sleeps: List[float]) -> RetryPolicy:
  async def record_sleep(delay: float) -> None:
    sleeps.append(delay)

  return RetryPolicy(max_attempts=3, base_delay=1.0, sleep=record_sleep)


@pytest.fixture()
def dataset() -> InMemoryDataset:
  return InMemoryDataset(
    records=[
      {'id': 'job-1', 'updatedAt': '2024-03-01T08:00:00.000Z', 'dateCreated': '2024-03-01T08:00:00.000Z', 'awValue': 12},
      {'id': 'job-2', 'updatedAt': '2024-02-10T09:30:00.000Z', 'dateCreated': '2024-02-10T09:30:00.000Z', 'awValue': 4.5}
    ],
    settings={'theme': 'dark', 'isAuthenticated': True, 'biometricEnabled': True}
  )


@pytest.fixture()
def manager(sandbox: SandboxStorage, store: MemorySettingsStore) -> LocalBackupManager:
  return LocalBackupManager(sandbox, store, app_version='1.2.3', clock=lambda: FIXED_NOW)
