"""
Relay Engine - duplex pump between the client and backend channels

Single threaded: both channels are polled in turn with a short read
timeout, stdout and stderr alike, until either side closes or sends EOF.
"""
import logging
import socket
import threading
import time
from typing import Optional

import paramiko

from spatch.proxy.errors import IOFailure
from spatch.proxy.selector import channel_finished

logger = logging.getLogger(__name__)


class RelayEngine:
    """Forwards data between client_channel and backend_channel"""

    def __init__(self, client_channel, backend_channel, username: str = '?', backend_name: str = '?',
                 poll_interval: float = 0.01, buffer_size: int = 2048, status_interval: int = 15,
                 stop_event: Optional[threading.Event] = None):
        self.client = client_channel
        self.backend = backend_channel
        self.username = username
        self.backend_name = backend_name
        self.poll_interval = poll_interval
        self.buffer_size = buffer_size
        self.status_interval = status_interval
        self.stop_event = stop_event or threading.Event()
        self.bytes_sent = 0
        self.bytes_received = 0

    def finished(self) -> bool:
        return (channel_finished(self.client)
                or channel_finished(self.backend)
                or self.stop_event.is_set())

    def run(self):
        """Relay until either side is done.

        Raises:
            IOFailure: a channel read or write failed
        """
        self.client.settimeout(self.poll_interval)
        self.backend.settimeout(self.poll_interval)
        print_status_time = time.time()

        try:
            while not self.finished():
                self.connect_channels()
                if time.time() >= print_status_time:
                    logger.info(f"{self.username} is connected to shell on {self.backend_name}")
                    print_status_time = time.time() + self.status_interval

            self.drain()
            self.forward_exit_status()
        except (OSError, EOFError, paramiko.SSHException) as e:
            raise IOFailure(f"relay failed: {e}")

        logger.debug(
            f"Relay ended for {self.username}: sent={self.bytes_sent} bytes, received={self.bytes_received} bytes"
        )

    def connect_channels(self):
        """One poll round over both directions and both streams."""
        self.bytes_sent += self._pump(self.client.recv, self.backend, self.backend.sendall)
        self._pump(self.client.recv_stderr, self.backend, self.backend.sendall_stderr)
        self.bytes_received += self._pump(self.backend.recv, self.client, self.client.sendall)
        self._pump(self.backend.recv_stderr, self.client, self.client.sendall_stderr)

    def _pump(self, read, dst, write) -> int:
        try:
            data = read(self.buffer_size)
        except socket.timeout:
            return 0
        if not data or dst.closed:
            return 0
        try:
            write(data)
        except OSError:
            # Peer closed between the check and the write: normal end
            if dst.closed:
                logger.debug(f"Dropped {len(data)} bytes for a closed channel")
                return 0
            raise
        return len(data)

    def drain(self):
        """Forward whatever is still buffered once one side has finished."""
        for src, dst in ((self.backend, self.client), (self.client, self.backend)):
            if dst.closed:
                continue
            while src.recv_ready():
                data = src.recv(self.buffer_size)
                if not data:
                    break
                dst.sendall(data)
            while src.recv_stderr_ready():
                data = src.recv_stderr(self.buffer_size)
                if not data:
                    break
                dst.sendall_stderr(data)

    def forward_exit_status(self):
        if self.backend.exit_status_ready() and not self.client.closed:
            status = self.backend.recv_exit_status()
            logger.debug(f"Backend {self.backend_name} exited with status {status}")
            self.client.send_exit_status(status)
