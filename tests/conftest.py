"""Shared fixtures: paramiko-like fake channels, keys, directory and config."""
import configparser
import socket
import textwrap
import threading
import time

import paramiko
import pytest

from spatch.core.directory import parse_directory
from spatch.gate.config import GateConfig


class FakeChannel:
    """In-memory stand-in for paramiko.Channel.

    recv() hands out queued bytes, raises socket.timeout when nothing is
    queued, and returns b'' once EOF applies. With eof_when_drained the
    channel reports EOF as soon as its queue runs dry.
    """

    def __init__(self, incoming=b'', stderr=b'', eof=False, eof_when_drained=False, chanid=0):
        self.inbox = bytearray(incoming)
        self.stderr_inbox = bytearray(stderr)
        self.output = bytearray()
        self.stderr_output = bytearray()
        self.closed = False
        self.eof_received = eof
        self.eof_when_drained = eof_when_drained
        self.timeout = None
        self.exit_status = None
        self.sent_exit_status = None
        self.chanid = chanid
        self.lock = threading.Lock()

    def get_id(self):
        return self.chanid

    def settimeout(self, timeout):
        self.timeout = timeout

    def _take(self, queue, nbytes, stream_eof):
        with self.lock:
            if queue:
                data = bytes(queue[:nbytes])
                del queue[:nbytes]
                return data
        if stream_eof:
            if self.eof_when_drained:
                self.eof_received = True
            return b''
        if self.timeout:
            time.sleep(min(self.timeout, 0.01))
        raise socket.timeout()

    def recv(self, nbytes):
        return self._take(self.inbox, nbytes, self.eof_received or self.closed or self.eof_when_drained)

    def recv_stderr(self, nbytes):
        return self._take(self.stderr_inbox, nbytes, self.eof_received or self.closed)

    def recv_ready(self):
        return bool(self.inbox)

    def recv_stderr_ready(self):
        return bool(self.stderr_inbox)

    def _check_open(self):
        if self.closed:
            raise OSError("Socket is closed")

    def send(self, data):
        self._check_open()
        self.output += data
        return len(data)

    def sendall(self, data):
        self.send(data)

    def send_stderr(self, data):
        self._check_open()
        self.stderr_output += data
        return len(data)

    def sendall_stderr(self, data):
        self.send_stderr(data)

    def exit_status_ready(self):
        return self.exit_status is not None

    def recv_exit_status(self):
        return self.exit_status

    def send_exit_status(self, status):
        self.sent_exit_status = status

    def close(self):
        self.closed = True


@pytest.fixture
def fake_channel():
    return FakeChannel


@pytest.fixture(scope='session')
def rsa_key():
    return paramiko.RSAKey.generate(1024)


@pytest.fixture(scope='session')
def other_rsa_key():
    return paramiko.RSAKey.generate(1024)


@pytest.fixture(scope='session')
def ecdsa_key():
    return paramiko.ECDSAKey.generate()


DIRECTORY_INI = textwrap.dedent("""
    [backend:web]
    address = web.example
    host = 10.0.0.10

    [backend:db]
    address = db.example
    host = 10.0.0.20
    port = 2222

    [backend:cache]
    address = cache.example
    host = 10.0.0.30

    [user:alice]
    password = alice-pw

    [user:bob]
    password = bob-pw

    [user:carol]
    password = carol-pw

    [grant:alice:db]
    username = postgres
    password = alice-db

    [grant:alice:web]
    username = deploy
    password = alice-web

    [grant:bob:web]
    username = bob
    password = bob-web
""")


@pytest.fixture
def directory():
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(DIRECTORY_INI)
    return parse_directory(parser)


@pytest.fixture
def directory_file(tmp_path):
    path = tmp_path / 'directory.conf'
    path.write_text(DIRECTORY_INI)
    return path


@pytest.fixture
def config_file(tmp_path, directory_file):
    path = tmp_path / 'spatch.conf'
    path.write_text(textwrap.dedent(f"""
        [gate]
        name = test-gate
        host_key_path = {tmp_path / 'host_key'}
        known_hosts_path = {tmp_path / 'known_hosts'}
        directory_path = {directory_file}

        [session]
        setup_timeout = 1
        poll_interval_ms = 5
    """))
    return path


@pytest.fixture
def config(config_file):
    return GateConfig(str(config_file))
