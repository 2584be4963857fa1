"""
Backend Selector - endpoint menu shown after gateway login

Lists the backends the user holds a grant for (declaration order), reads
the user's choice and resolves the grant carrying that user's
backend-specific credentials.
"""
import logging
import time
from typing import Optional

from spatch.core.directory import CredentialDirectory, GatewayUser, Grant
from spatch.proxy.errors import IOFailure, NoAuthorizedBackend
from spatch.proxy.line_editor import read_line

logger = logging.getLogger(__name__)

WELCOME_MSG = "welcome to spatch\r\n"
SELECT_MSG = "select an endpoint\r\n"
NO_ENDPOINT_MSG = "no valid endpoint\r\n"
EXIT_CHOICE = "exit"


def channel_finished(channel) -> bool:
    """True once the peer closed the channel or sent EOF."""
    return channel.closed or channel.eof_received


class BackendSelector:
    """Interactive endpoint menu for one authenticated user"""

    def __init__(self, channel, directory: CredentialDirectory, user: GatewayUser, status_interval: int = 15):
        self.channel = channel
        self.directory = directory
        self.user = user
        self.status_interval = status_interval

    def write(self, text: str):
        try:
            self.channel.send(text.encode('utf-8'))
        except OSError as e:
            raise IOFailure(f"write to client failed: {e}")

    def show_menu(self) -> int:
        """Write the endpoint list; returns the number of backends shown."""
        self.write(SELECT_MSG)
        grants = self.directory.grants_for(self.user)
        for grant in grants:
            self.write(f"{grant.backend.display_address}\r\n")
        return len(grants)

    def select(self) -> Optional[Grant]:
        """Run the menu until the user picks a backend, exits or disconnects.

        Returns:
            The chosen Grant, or None for 'exit' / closed channel

        Raises:
            NoAuthorizedBackend: the user has no grant at all
        """
        username = self.user.username
        self.write(WELCOME_MSG)
        print_status_time = time.time()

        while True:
            if time.time() >= print_status_time:
                logger.info(f"{username} is connected to spatch")
                print_status_time = time.time() + self.status_interval

            if self.show_menu() == 0:
                self.write(NO_ENDPOINT_MSG)
                raise NoAuthorizedBackend(f"{username} has no authorized backend")
            self.write(f"{EXIT_CHOICE}\r\n")

            choice = read_line(self.channel)

            grant = self.directory.find_grant(self.user, choice)
            if grant is not None:
                logger.info(f"{username} selected {grant.backend.display_address}")
                return grant

            if choice == EXIT_CHOICE:
                logger.debug(f"{username} chose exit")
                return None
            if channel_finished(self.channel):
                logger.debug(f"{username} closed the channel at the menu")
                return None

            logger.debug(f"{username} entered unknown endpoint {choice!r}")
