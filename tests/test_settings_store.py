from __future__ import annotations

import sqlite3

import pytest

from techtrace.backup.errors import ConfigurationError
from techtrace.security.secret_manager import SecretManager
from techtrace.storage.settings_store import (
  DRIVE_SESSION_KEY,
  EXTERNAL_DIR_KEY,
  MemorySettingsStore,
  SqliteSettingsStore
)


def test_memory_store_copies_values():
  store = MemorySettingsStore()
  value = {'uri': '/data', 'grant_id': 'g1'}

  store.set(EXTERNAL_DIR_KEY, value)
  value['uri'] = '/elsewhere'
  fetched = store.get(EXTERNAL_DIR_KEY)
  fetched['grant_id'] = 'changed'

  assert store.get(EXTERNAL_DIR_KEY) == {'uri': '/data', 'grant_id': 'g1'}
  store.clear(EXTERNAL_DIR_KEY)
  assert store.get(EXTERNAL_DIR_KEY, 'default') == 'default'


def test_sqlite_store_round_trip_and_upsert(tmp_path):
  store = SqliteSettingsStore(tmp_path / 'settings.db')

  store.set('drive_folder_id', 'folder-1')
  store.set('drive_folder_id', 'folder-2')

  reopened = SqliteSettingsStore(tmp_path / 'settings.db')
  assert reopened.get('drive_folder_id') == 'folder-2'
  reopened.clear('drive_folder_id')
  assert store.get('drive_folder_id') is None


def test_secret_keys_are_encrypted_at_rest(tmp_path):
  secrets = SecretManager(tmp_path / 'secrets' / 'fernet.key')
  store = SqliteSettingsStore(tmp_path / 'settings.db', secrets)
  session = {'access_token': 'access-1', 'refresh_token': 'refresh-1', 'expires_at': 1.0}

  store.set(DRIVE_SESSION_KEY, session)

  with sqlite3.connect(tmp_path / 'settings.db') as conn:
    raw, encrypted = conn.execute('SELECT value, encrypted FROM settings WHERE key = ?', (DRIVE_SESSION_KEY,)).fetchone()
  assert encrypted == 1
  assert b'refresh-1' not in bytes(raw)
  assert store.get(DRIVE_SESSION_KEY) == session


def test_secret_from_another_key_is_a_configuration_error(tmp_path):
  first = SqliteSettingsStore(tmp_path / 'settings.db', SecretManager(tmp_path / 'a.key'))
  first.set(DRIVE_SESSION_KEY, {'access_token': 'x'})
  second = SqliteSettingsStore(tmp_path / 'settings.db', SecretManager(tmp_path / 'b.key'))

  with pytest.raises(ConfigurationError):
    second.get(DRIVE_SESSION_KEY)


def test_secret_manager_reuses_existing_key(tmp_path):
  key_path = tmp_path / 'fernet.key'
  token = SecretManager(key_path).seal({'client_secret': 'shh', 'scopes': ['drive.file']})

  assert SecretManager(key_path).unseal(token) == {'client_secret': 'shh', 'scopes': ['drive.file']}


def test_garbage_key_file_is_a_configuration_error(tmp_path):
  key_path = tmp_path / 'fernet.key'
  key_path.write_bytes(b'not-a-fernet-key')

  with pytest.raises(ConfigurationError):
    SecretManager(key_path)


def test_empty_key_file_is_rejected(tmp_path):
  key_path = tmp_path / 'fernet.key'
  key_path.write_bytes(b'')

  with pytest.raises(ConfigurationError):
    SecretManager(key_path)
