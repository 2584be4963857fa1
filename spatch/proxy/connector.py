"""
Backend Connector - upstream SSH session to the selected backend

Steps run in order: connect, password auth, host key verification, open
channel, request pty, request shell. The first failing step writes one
line to the client channel and closes everything opened so far.
"""
import logging
import socket

import paramiko

from spatch.core.directory import Grant
from spatch.core.trust_store import TrustStore
from spatch.proxy.errors import BackendConnectFailed, IOFailure
from spatch.proxy.verification import HostVerifier

logger = logging.getLogger(__name__)

CONNECT_FAILED_MSG = "failed to connect to host"
AUTH_FAILED_MSG = "authentication failed"
KNOWNHOST_FAILED_MSG = "knownhost verification failed"
SESSION_FAILED_MSG = "failed to open remote shell session"
PTY_FAILED_MSG = "pty request failed"
SHELL_FAILED_MSG = "failed to open remote shell"


class BackendConnection:
    """Established upstream transport and shell channel."""

    def __init__(self, transport: paramiko.Transport, channel, grant: Grant):
        self.transport = transport
        self.channel = channel
        self.grant = grant

    @property
    def backend(self):
        return self.grant.backend

    def close(self):
        """Close the shell channel and the transport (idempotent)."""
        if self.channel is not None:
            try:
                if not self.channel.closed:
                    self.channel.close()
            except (OSError, EOFError, paramiko.SSHException) as e:
                logger.debug(f"Error closing backend channel: {e}")
        if self.transport is not None:
            self.transport.close()


class BackendConnector:
    """Opens the upstream shell for a grant, reporting failures to the client"""

    def __init__(self, trust_store: TrustStore, client_channel, connect_timeout: float = 10.0,
                 term: str = 'xterm', width: int = 116, height: int = 64):
        self.trust_store = trust_store
        self.client_channel = client_channel
        self.connect_timeout = connect_timeout
        self.term = term
        self.width = width
        self.height = height

    def report(self, message: str):
        try:
            self.client_channel.send(f"{message}\r\n".encode('utf-8'))
        except OSError as e:
            raise IOFailure(f"write to client failed: {e}")

    def _open_transport(self, host: str, port: int) -> paramiko.Transport:
        sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=self.connect_timeout)
        except (paramiko.SSHException, EOFError, OSError):
            transport.close()
            raise
        return transport

    def connect(self, grant: Grant) -> BackendConnection:
        """Open a shell on grant.backend using the grant's credentials.

        Raises:
            BackendConnectFailed: (or a trust subclass) after telling the client why

        Whatever is raised, a partly opened channel and transport are closed.
        """
        backend = grant.backend
        transport = None
        channel = None
        connected = False
        step = CONNECT_FAILED_MSG
        try:
            transport = self._open_transport(backend.host, backend.port)

            step = AUTH_FAILED_MSG
            transport.auth_password(grant.username, grant.password, fallback=False)
            if not transport.is_authenticated():
                raise paramiko.AuthenticationException("password rejected")

            step = KNOWNHOST_FAILED_MSG
            verifier = HostVerifier(self.trust_store, self.client_channel)
            verifier.verify(backend.host, backend.port, transport.get_remote_server_key())

            step = SESSION_FAILED_MSG
            channel = transport.open_session(timeout=self.connect_timeout)

            step = PTY_FAILED_MSG
            channel.get_pty(term=self.term, width=self.width, height=self.height)

            step = SHELL_FAILED_MSG
            channel.invoke_shell()
            connected = True
        except BackendConnectFailed as e:
            # Trust failures already explained themselves on stderr
            logger.warning(f"{step} for {grant.username}@{backend.host}:{backend.port}: {e}")
            self.report(step)
            raise
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.warning(f"{step} for {grant.username}@{backend.host}:{backend.port}: {e}")
            self.report(step)
            raise BackendConnectFailed(f"{step}: {e}")
        finally:
            if not connected:
                self._abort(transport, channel)

        logger.debug(f"Backend shell open on {backend.host}:{backend.port} ({self.width}x{self.height})")
        return BackendConnection(transport, channel, grant)

    def _abort(self, transport, channel):
        BackendConnection(transport, channel, None).close()
