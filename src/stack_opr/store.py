"""Durable key-value state store with conditional writes.

Records are JSON objects with an integer version. Every write names the
version it expects to replace (0 = the record must not exist yet) and
fails with OptimisticLockConflictError otherwise. The lock manager and the
state snapshot are both built on this primitive.

Writes may also carry a fencing token. The store compares it with the
token in the stack's lock record ('{stack}/lock') inside the same critical
section as the write, so a holder whose lock was reclaimed cannot write
state any more.

Backends:
- FileStateStore: JSON files on local disk, flock + atomic rename
- HttpStateStore: remote store over HTTP (If-Match / X-Fencing-Token)
- MemoryStateStore: in-process, for tests and embedding
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

import requests
import urllib3

from errors import (
    OptimisticLockConflictError,
    StaleFencingTokenError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)


@dataclass
class VersionedRecord:
    """A stored record and the version it was read at."""
    key: str
    data: dict
    version: int


def lock_key_for(key: str) -> str:
    """Lock record key guarding the stack that owns `key`."""
    stack = key.rsplit('/', 1)[0]
    return f'{stack}/lock'


def check_fencing(key: str, token: Optional[int], lock_data: Optional[dict]) -> None:
    """Reject a write whose fencing token is not the stack's live lock token.

    Raises:
        StaleFencingTokenError: If no lock is held or the token differs
    """
    if token is None:
        return
    if not lock_data or lock_data.get('released'):
        raise StaleFencingTokenError(key, token, None)
    current = lock_data.get('token')
    if current != token:
        raise StaleFencingTokenError(key, token, current)


class StateStore:
    """Base class for state store backends."""

    def read(self, key: str) -> Optional[VersionedRecord]:
        """Read a record, or None if it does not exist."""
        raise NotImplementedError

    def write(self, key: str, data: dict, expected_version: int,
              fencing_token: Optional[int] = None) -> int:
        """Conditionally write a record.

        Args:
            key: Record key, e.g. 'prod/state'
            data: JSON-serializable mapping
            expected_version: Version being replaced (0 = must not exist)
            fencing_token: Lock token of the writer, checked when given

        Returns:
            New version

        Raises:
            OptimisticLockConflictError: If the current version differs
            StaleFencingTokenError: If the fencing token is not current
        """
        raise NotImplementedError


class MemoryStateStore(StateStore):
    """Thread-safe in-process store."""

    def __init__(self):
        self._records: dict[str, tuple[int, dict]] = {}
        self._mutex = threading.Lock()

    def read(self, key: str) -> Optional[VersionedRecord]:
        with self._mutex:
            if key not in self._records:
                return None
            version, data = self._records[key]
            return VersionedRecord(key, json.loads(json.dumps(data)), version)

    def write(self, key: str, data: dict, expected_version: int,
              fencing_token: Optional[int] = None) -> int:
        payload = json.loads(json.dumps(data))
        with self._mutex:
            current = self._records.get(key, (0, None))[0]
            if current != expected_version:
                raise OptimisticLockConflictError(key, expected_version, current)
            lock = self._records.get(lock_key_for(key))
            check_fencing(key, fencing_token, lock[1] if lock else None)
            self._records[key] = (current + 1, payload)
            return current + 1


class FileStateStore(StateStore):
    """JSON files under a directory, one per key.

    Layout: {root}/{stack}/{name}.json holding {"version": n, "data": {...}}.
    All writes for a stack serialize on an exclusive flock of
    {root}/{stack}/.lock, which makes the version check, fencing check and
    rename one atomic step across processes on the same host.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / f'{key}.json'

    @contextmanager
    def _stack_lock(self, key: str) -> Iterator[None]:
        lock_path = self._path(key).parent / '.lock'
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(lock_path, 'a+', encoding='utf-8') as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _load(self, key: str) -> Optional[VersionedRecord]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailableError(key, f"cannot read {path}: {e}")
        return VersionedRecord(key, raw.get('data') or {}, int(raw.get('version', 0)))

    def read(self, key: str) -> Optional[VersionedRecord]:
        return self._load(key)

    def write(self, key: str, data: dict, expected_version: int,
              fencing_token: Optional[int] = None) -> int:
        path = self._path(key)
        with self._stack_lock(key):
            record = self._load(key)
            current = record.version if record else 0
            if current != expected_version:
                raise OptimisticLockConflictError(key, expected_version, current)
            lock = self._load(lock_key_for(key))
            check_fencing(key, fencing_token, lock.data if lock else None)

            new_version = current + 1
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.stem}.', suffix='.tmp')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump({'version': new_version, 'data': data}, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except OSError as e:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise StoreUnavailableError(key, f"cannot write {path}: {e}")

        logger.debug(f"Wrote {key} version {new_version}")
        return new_version


class HttpStateStore(StateStore):
    """Remote store speaking a small HTTP protocol.

    GET  {url}/{key}  -> 200 with JSON body and ETag: <version>, or 404
    PUT  {url}/{key}  with If-Match: <version> (If-None-Match: * for a new
                      record) and X-Fencing-Token when fenced
                      -> 200/201 with ETag: <new version>
                      -> 412 version mismatch, 409 stale fencing token

    The server performs the fencing check; the 409 body may carry
    {"current_token": n}.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, verify_tls: bool = True,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.session = session or requests.Session()
        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _url(self, key: str) -> str:
        return f'{self.base_url}/{key}'

    def _request(self, method: str, key: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(
                method, self._url(key), timeout=self.timeout, verify=self.verify_tls, **kwargs
            )
        except requests.exceptions.ConnectionError:
            raise StoreUnavailableError(key, f"cannot connect to {self.base_url}")
        except requests.exceptions.Timeout:
            raise StoreUnavailableError(key, f"timeout after {self.timeout}s")

    @staticmethod
    def _version(resp: requests.Response) -> int:
        etag = resp.headers.get('ETag', '0').strip('"')
        try:
            return int(etag)
        except ValueError:
            return 0

    def read(self, key: str) -> Optional[VersionedRecord]:
        resp = self._request('GET', key)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise StoreUnavailableError(key, f"GET returned {resp.status_code}: {resp.text[:100]}")
        try:
            data = resp.json()
        except ValueError:
            raise StoreUnavailableError(key, f"GET returned invalid JSON: {resp.text[:100]}")
        if not isinstance(data, dict):
            raise StoreUnavailableError(key, f"GET returned {type(data).__name__}, expected an object")
        return VersionedRecord(key, data, self._version(resp))

    def write(self, key: str, data: dict, expected_version: int,
              fencing_token: Optional[int] = None) -> int:
        headers = {'Content-Type': 'application/json'}
        if expected_version == 0:
            headers['If-None-Match'] = '*'
        else:
            headers['If-Match'] = f'"{expected_version}"'
        if fencing_token is not None:
            headers['X-Fencing-Token'] = str(fencing_token)

        resp = self._request('PUT', key, data=json.dumps(data), headers=headers)
        if resp.status_code == 412:
            current = self._version(resp)
            raise OptimisticLockConflictError(key, expected_version, current)
        if resp.status_code == 409:
            try:
                current = resp.json().get('current_token')
            except ValueError:
                current = None
            raise StaleFencingTokenError(key, fencing_token, current)
        if resp.status_code not in (200, 201, 204):
            raise StoreUnavailableError(key, f"PUT returned {resp.status_code}: {resp.text[:100]}")

        new_version = self._version(resp) or expected_version + 1
        logger.debug(f"Wrote {key} version {new_version} via {self.base_url}")
        return new_version


def build_store(config) -> StateStore:
    """Create the state store named by an EngineConfig."""
    if config.state_backend == 'http':
        return HttpStateStore(config.state_url, verify_tls=config.state_verify_tls)
    return FileStateStore(config.state_dir)
