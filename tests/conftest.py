"""
Shared pytest fixtures for cloudkeep tests.

This module provides fixtures for:
- Configuration objects and TOML config files
- A project tree to back up
- Archive writing and reading
- Fake process runner (external commands)
- Fake requests session (HTTP storage providers)
"""

import tarfile

import pytest
import zstandard as zstd

from cloudkeep.config import AppConfig, BackupSettings, StorageSettings
from cloudkeep.backup.compression import ArchiveWriter
from cloudkeep.backup.sources import ProcessResult, ProcessRunner


class FakeRunner(ProcessRunner):
    """
    ProcessRunner that records calls and returns scripted results.

    results maps a command name to a ProcessResult, an exception to raise,
    a callable(command, args, env), or a list of those consumed in order.
    Unscripted commands succeed with empty output.
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def run(self, command, args=(), env=None):
        args = list(args)
        self.calls.append((command, args, env))

        result = self.results.get(command, ProcessResult(0))
        if isinstance(result, list):
            result = result.pop(0) if len(result) > 1 else result[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            result = result(command, args, env)
        return result

    def commands(self):
        return [call[0] for call in self.calls]


class FakeResponse:
    """Just enough of requests.Response for the HTTP adapters."""

    def __init__(self, status_code=200, json_data=None, content=b'', text=None):
        self.status_code = status_code
        self._json = json_data
        self.content = content
        self.text = text if text is not None else ('' if json_data is None else str(json_data))

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def iter_content(self, chunk_size=1):
        yield self.content


class FakeSession:
    """Queue of responses returned in order; every request is recorded."""

    def __init__(self):
        self.responses = []
        self.requests = []

    def add(self, json_data=None, status_code=200, content=b'', text=None):
        self.responses.append(FakeResponse(status_code, json_data, content, text))
        return self

    def add_error(self, error):
        self.responses.append(error)
        return self

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def urls(self):
        return [url for _, url, _ in self.requests]


@pytest.fixture
def fake_runner():
    """Process runner with no scripted results."""
    return FakeRunner()


@pytest.fixture
def fake_session():
    """Empty fake HTTP session, fill it with add()."""
    return FakeSession()


@pytest.fixture
def project_dir(tmp_path):
    """
    Create a project tree.

    Creates:
    - myapp/a.txt
    - myapp/src/main.py
    - myapp/node_modules/lib.js (excluded in most tests)
    """
    project = tmp_path / 'myapp'
    (project / 'src').mkdir(parents=True)
    (project / 'node_modules').mkdir()
    (project / 'a.txt').write_text('hello')
    (project / 'src' / 'main.py').write_text('print("hi")\n')
    (project / 'node_modules' / 'lib.js').write_text('module.exports = {}')
    return project


@pytest.fixture
def make_config(tmp_path, project_dir):
    """Factory for AppConfig objects rooted in tmp_path."""

    def _make(storage=None, database=None, system=None, **backup_overrides):
        backup_overrides.setdefault('local_backup_dir', str(tmp_path / 'backups'))
        backup_overrides.setdefault('project_path', str(project_dir))
        return AppConfig(
            storage=storage or StorageSettings(
                provider='s3',
                bucket='test-bucket',
                access_key='test_access_key',
                secret_key='test_secret_key'
            ),
            backup=BackupSettings(**backup_overrides),
            database=database,
            system=system,
        )

    return _make


@pytest.fixture
def config_file(tmp_path, project_dir):
    """Write a minimal TOML config file and return its path."""
    path = tmp_path / 'config.toml'
    path.write_text(f'''
[storage]
provider = "s3"
bucket = "test-bucket"
access_key = "test_access_key"
secret_key = "test_secret_key"

[backup]
local_backup_dir = "{tmp_path / 'backups'}"
project_path = "{project_dir}"
retention_days = 7
compression_level = 3
exclude = ["node_modules"]

[logging]
level = "info"
log_dir = "{tmp_path / 'logs'}"
''')
    return path


@pytest.fixture
def archive_writer(tmp_path):
    """Open ArchiveWriter at tmp_path/test.tar.zst."""
    writer = ArchiveWriter(str(tmp_path / 'test.tar.zst'))
    yield writer
    writer.abort()


def _read_archive(path):
    entries = {}
    with open(path, 'rb') as f:
        reader = zstd.ZstdDecompressor().stream_reader(f)
        with tarfile.open(fileobj=reader, mode='r|') as tar:
            for member in tar:
                if member.isfile():
                    entries[member.name] = tar.extractfile(member).read()
    return entries


@pytest.fixture
def read_archive():
    """Return a function mapping an archive path to {entry name: bytes}."""
    return _read_archive
