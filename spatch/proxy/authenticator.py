"""
Session Authenticator - gateway side setup of one inbound connection

Runs key exchange, then waits until the client is authenticated, has one
session channel open and was granted a shell (or pty). Any failure ends the
session before a backend is contacted; one instance serves one session.
"""
import logging
import time

import paramiko

from spatch.core.directory import CredentialDirectory
from spatch.proxy.errors import AuthExhausted, ChannelSetupFailed, KeyExchangeFailed
from spatch.proxy.handler import SpatchServerHandler

logger = logging.getLogger(__name__)


class SessionAuthenticator:
    """Drives paramiko server negotiation until the session is usable."""

    def __init__(self, transport: paramiko.Transport, directory: CredentialDirectory, host_key,
                 auth_attempts: int = 3, setup_timeout: float = 30.0, source_ip: str = '?'):
        self.transport = transport
        self.host_key = host_key
        self.setup_timeout = setup_timeout
        self.source_ip = source_ip
        self.handler = SpatchServerHandler(directory, source_ip=source_ip, auth_attempts=auth_attempts)

    def run(self):
        """Negotiate the session.

        Returns:
            (GatewayUser, client channel)

        Raises:
            KeyExchangeFailed, AuthExhausted, ChannelSetupFailed
        """
        self.transport.add_server_key(self.host_key)
        try:
            self.transport.start_server(server=self.handler)
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise KeyExchangeFailed(f"key exchange failed: {e}")

        deadline = time.time() + self.setup_timeout
        self._wait_ready(deadline)

        channel = self.transport.accept(max(deadline - time.time(), 1.0))
        if channel is None:
            raise ChannelSetupFailed("failed to open channel")

        user = self.handler.authenticated_user
        logger.debug(f"Session ready for {user.username} from {self.source_ip} (chanid={channel.get_id()})")
        return user, channel

    def _wait_ready(self, deadline: float):
        handler = self.handler

        while not handler.ready():
            if handler.auth_exhausted:
                raise AuthExhausted(f"too many failed password attempts from {self.source_ip}")
            if not self.transport.is_active():
                break
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            handler.state_changed.wait(min(remaining, 0.5))
            handler.state_changed.clear()

        if handler.ready():
            return
        if handler.auth_exhausted:
            raise AuthExhausted(f"too many failed password attempts from {self.source_ip}")
        if not handler.authenticated:
            raise ChannelSetupFailed("authentication failed")
        if not handler.channel_open:
            raise ChannelSetupFailed("failed to open channel")
        raise ChannelSetupFailed("channel type not supported")
