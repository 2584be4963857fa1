"""Trust Store - known backend host keys with trust-on-first-use.

Keys are kept in an OpenSSH known_hosts file read and written through
paramiko.HostKeys. Every write goes to a temporary file that atomically
replaces the store, under a lock shared by all sessions of the process.
"""
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import paramiko
from paramiko.hostkeys import InvalidHostKey

logger = logging.getLogger(__name__)

# Host key check results
KNOWN_OK = 'known_ok'
KNOWN_CHANGED = 'known_changed'
FOUND_OTHER = 'found_other'
FILE_NOT_FOUND = 'file_not_found'
UNKNOWN = 'unknown'
ERROR = 'error'

# Raised when the known_hosts file cannot be read or parsed
LOAD_ERRORS = (OSError, ValueError, InvalidHostKey, paramiko.SSHException)


class HostKeyConflict(Exception):
    """Another key is already recorded for a host we were asked to trust."""

    def __init__(self, identity: str, fingerprint: str):
        super().__init__(f"A different key is already recorded for {identity}: {fingerprint}")
        self.identity = identity
        self.fingerprint = fingerprint


def host_identity(host: str, port: int = 22) -> str:
    """known_hosts name of a backend: host, or [host]:port for other ports."""
    if port == 22:
        return host
    return f'[{host}]:{port}'


def format_fingerprint(key: paramiko.PKey) -> str:
    """Colon separated hex MD5 fingerprint, e.g. 'a1:b2:...'."""
    return ':'.join(f'{b:02x}' for b in key.get_fingerprint())


@dataclass(frozen=True)
class TrustCheck:
    """Result of looking a backend host key up in the store."""

    state: str
    identity: str
    fingerprint: str
    error: Optional[str] = None


class TrustStore:
    """Persistent record of backend host keys shared by all sessions."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> paramiko.HostKeys:
        host_keys = paramiko.HostKeys()
        if os.path.exists(self.path):
            host_keys.load(self.path)
        return host_keys

    def check(self, host: str, port: int, key: paramiko.PKey) -> TrustCheck:
        """Compare key against the recorded key(s) of host:port."""
        identity = host_identity(host, port)
        fingerprint = format_fingerprint(key)

        if not os.path.exists(self.path):
            return TrustCheck(FILE_NOT_FOUND, identity, fingerprint)

        try:
            host_keys = self._load()
        except LOAD_ERRORS as e:
            logger.error(f"Cannot read known hosts file {self.path}: {e}")
            reason = getattr(e, 'strerror', None) or str(e) or type(e).__name__
            return TrustCheck(ERROR, identity, fingerprint, error=reason)

        entries = host_keys.lookup(identity)
        if not entries:
            return TrustCheck(UNKNOWN, identity, fingerprint)

        recorded = entries.get(key.get_name())
        if recorded is None:
            return TrustCheck(FOUND_OTHER, identity, fingerprint)
        if recorded != key:
            return TrustCheck(KNOWN_CHANGED, identity, fingerprint)
        return TrustCheck(KNOWN_OK, identity, fingerprint)

    def add(self, host: str, port: int, key: paramiko.PKey):
        """Record key for host:port.

        Raises:
            HostKeyConflict: a different key of any type was recorded meanwhile
            OSError: the store could not be read or written
            InvalidHostKey: the store holds a malformed line
        """
        identity = host_identity(host, port)
        with self._lock:
            host_keys = self._load()
            entries = host_keys.lookup(identity)
            if entries:
                recorded = entries.get(key.get_name())
                if recorded == key:
                    logger.debug(f"Host key for {identity} already recorded")
                    return
                other = recorded or next(iter(entries.values()))
                raise HostKeyConflict(identity, format_fingerprint(other))

            host_keys.add(identity, key.get_name(), key)
            self._write(host_keys)

        logger.info(f"Recorded host key for {identity} ({key.get_name()} {format_fingerprint(key)})")

    def remove(self, host: str, port: int = 22) -> bool:
        """Forget every key recorded for host:port (explicit key rotation).

        Returns:
            True if something was removed
        """
        identity = host_identity(host, port)
        with self._lock:
            if not os.path.exists(self.path):
                return False
            host_keys = self._load()
            removed = False
            while host_keys.lookup(identity):
                del host_keys[identity]
                removed = True
            if removed:
                self._write(host_keys)

        if removed:
            logger.info(f"Removed recorded host keys for {identity}")
        return removed

    def records(self) -> List[Tuple[str, str, str]]:
        """List (identity, key type, fingerprint) for every recorded key."""
        host_keys = self._load()
        result = []
        seen = set()
        for identity in host_keys.keys():
            if identity in seen:
                continue
            seen.add(identity)
            for key_type, key in host_keys[identity].items():
                result.append((identity, key_type, format_fingerprint(key)))
        return result

    def _write(self, host_keys: paramiko.HostKeys):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.known_hosts.', dir=directory)
        os.close(fd)
        try:
            host_keys.save(tmp_path)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def __repr__(self):
        return f'<TrustStore {self.path}>'
