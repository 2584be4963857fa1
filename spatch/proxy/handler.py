"""
paramiko server interface for the gateway side of a session

Tracks the three facts a session needs before the menu can start
(authenticated, channel open, shell granted) and the password retry budget.
paramiko calls these methods from its transport thread; the authenticator
waits on ``state_changed`` from the session thread.
"""
import logging
import threading
from typing import Optional

import paramiko

from spatch.core.directory import CredentialDirectory, GatewayUser

logger = logging.getLogger(__name__)


class SpatchServerHandler(paramiko.ServerInterface):
    """Handles gateway authentication and channel requests for one client"""

    def __init__(self, directory: CredentialDirectory, source_ip: str = '?', auth_attempts: int = 3):
        self.directory = directory
        self.source_ip = source_ip
        self.attempts_left = auth_attempts
        self.state_changed = threading.Event()
        self._lock = threading.Lock()

        self.authenticated_user: Optional[GatewayUser] = None
        self.auth_exhausted = False
        self.channel_id = None
        self.shell_granted = False

        # PTY parameters from client (terminal type is reused for the backend)
        self.pty_term = None
        self.pty_width = None
        self.pty_height = None

    @property
    def authenticated(self) -> bool:
        return self.authenticated_user is not None

    @property
    def channel_open(self) -> bool:
        return self.channel_id is not None

    def ready(self) -> bool:
        """True once authenticated, channel open and shell granted all hold."""
        return self.authenticated and self.channel_open and self.shell_granted

    def _changed(self):
        self.state_changed.set()

    def get_allowed_auths(self, username):
        return 'password'

    def check_auth_none(self, username: str):
        return paramiko.AUTH_FAILED

    def check_auth_password(self, username: str, password: str):
        """Check password authentication against the credential directory"""
        with self._lock:
            if self.auth_exhausted:
                return paramiko.AUTH_FAILED

            user = self.directory.authenticate(username, password)
            if user is None:
                self.attempts_left -= 1
                logger.warning(
                    f"Auth failed for {username} from {self.source_ip} ({self.attempts_left} attempts left)"
                )
                if self.attempts_left <= 0:
                    self.auth_exhausted = True
                    self._changed()
                return paramiko.AUTH_FAILED

            self.authenticated_user = user
        logger.info(f"Auth OK: {username} from {self.source_ip}")
        self._changed()
        return paramiko.AUTH_SUCCESSFUL

    def check_auth_publickey(self, username: str, key):
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind: str, chanid: int):
        """Accept exactly one session channel"""
        logger.debug(f"Channel request: kind={kind}, chanid={chanid}")
        if kind != 'session':
            logger.info(f"Refusing channel of type {kind} from {self.source_ip}")
            return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE
        with self._lock:
            if self.channel_id is not None:
                logger.info(f"Refusing extra session channel {chanid} from {self.source_ip}")
                return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED
            self.channel_id = chanid
        self._changed()
        return paramiko.OPEN_SUCCEEDED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        """Allow PTY requests and remember the terminal type"""
        logger.debug(f"PTY request: term={term}, width={width}, height={height}")
        self.pty_term = term.decode('utf-8', errors='replace') if isinstance(term, bytes) else term
        self.pty_width = width
        self.pty_height = height
        self.shell_granted = True
        self._changed()
        return True

    def check_channel_shell_request(self, channel):
        logger.debug("Shell request received")
        self.shell_granted = True
        self._changed()
        return True

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        """Resize policy: always rejected, the backend terminal size is fixed"""
        logger.info(f"request resize {width} {height} {pixelwidth} {pixelheight}")
        return False

    def check_channel_exec_request(self, channel, command):
        logger.info(f"Refusing exec request from {self.source_ip}")
        return False

    def check_channel_subsystem_request(self, channel, name):
        logger.info(f"Refusing subsystem request {name} from {self.source_ip}")
        return False

    def check_channel_env_request(self, channel, name, value):
        return False

    def check_channel_x11_request(self, channel, single_connection, auth_protocol, auth_cookie, screen_number):
        return False

    def check_channel_forward_agent_request(self, channel):
        return False

    def check_port_forward_request(self, address, port):
        return False

    def check_global_request(self, kind, msg):
        return False
