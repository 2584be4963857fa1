#!/usr/bin/env python3
"""
SSH bastion gateway
Authenticates clients, lets them pick an authorized backend and relays
their shell session to it using backend-specific credentials
"""
import logging
import logging.handlers
import os
import socket
import select
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import paramiko
import pytz

from spatch.core.directory import CredentialDirectory, load_directory
from spatch.core.trust_store import TrustStore
from spatch.gate.config import GateConfig, get_config
from spatch.proxy.authenticator import SessionAuthenticator
from spatch.proxy.connector import BackendConnector
from spatch.proxy.errors import SessionResult, SpatchError
from spatch.proxy.relay import RelayEngine
from spatch.proxy.selector import BackendSelector, channel_finished

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Logging - basic setup (will be reconfigured after loading config)
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger('ssh_proxy')


class SessionSupervisor:
    """Owns one client connection from accept to teardown.

    Every failure ends up in the returned SessionResult; nothing is raised
    to the listener and nothing outlives the connection.
    """

    def __init__(self, transport: paramiko.Transport, directory: CredentialDirectory,
                 trust_store: TrustStore, host_key: paramiko.PKey, config: GateConfig,
                 source_ip: str = '?'):
        self.transport = transport
        self.directory = directory
        self.trust_store = trust_store
        self.host_key = host_key
        self.config = config
        self.source_ip = source_ip
        self.session_id = f"{source_ip}_{datetime.now(pytz.UTC).timestamp()}"
        self.stop_event = threading.Event()
        self.user = None
        self.client_channel = None
        self.backend_connection = None

    def run(self) -> SessionResult:
        result = SessionResult(
            ok=False,
            reason='error',
            session_id=self.session_id,
            started_at=datetime.now(pytz.UTC)
        )
        try:
            authenticator = SessionAuthenticator(
                self.transport,
                self.directory,
                self.host_key,
                auth_attempts=self.config.auth_attempts,
                setup_timeout=self.config.setup_timeout,
                source_ip=self.source_ip
            )
            self.user, self.client_channel = authenticator.run()
            result.username = self.user.username

            result.reason = self._serve(authenticator.handler, result)
            result.ok = True

        except SpatchError as e:
            result.ok = e.ok
            result.reason = e.reason
            result.detail = str(e)
            if e.ok:
                logger.info(f"Session {self.session_id} ended: {e}")
            else:
                logger.warning(f"Session {self.session_id} failed ({e.reason}): {e}")

        except Exception as e:
            logger.error(f"Error handling client {self.source_ip}: {e}", exc_info=True)
            result.reason = 'error'
            result.detail = str(e)

        finally:
            self.close()
            result.ended_at = datetime.now(pytz.UTC)

        return result

    def _serve(self, handler, result: SessionResult) -> str:
        username = self.user.username
        try:
            selector = BackendSelector(
                self.client_channel, self.directory, self.user,
                status_interval=self.config.status_interval
            )
            grant = selector.select()
            if grant is None:
                return 'client_closed' if channel_finished(self.client_channel) else 'exit'

            backend = grant.backend
            result.backend = backend.display_address
            logger.info(f"{username} is opening connection to {grant.username}@{backend.host}:{backend.port}")

            connector = BackendConnector(
                self.trust_store,
                self.client_channel,
                connect_timeout=self.config.connect_timeout,
                term=handler.pty_term or self.config.default_term,
                width=self.config.pty_width,
                height=self.config.pty_height
            )
            self.backend_connection = connector.connect(grant)

            try:
                relay = RelayEngine(
                    self.client_channel,
                    self.backend_connection.channel,
                    username=username,
                    backend_name=backend.display_address,
                    poll_interval=self.config.poll_interval,
                    buffer_size=self.config.buffer_size,
                    status_interval=self.config.status_interval,
                    stop_event=self.stop_event
                )
                relay.run()
            finally:
                logger.info(f"{username} is disconnected from {backend.host}")
            return 'completed'
        finally:
            logger.info(f"{username} disconnected")

    def terminate(self):
        """Cooperatively end the session from another thread (admin kill, shutdown)."""
        logger.info(f"Terminating session {self.session_id}")
        self.stop_event.set()
        channel = self.client_channel
        if channel is not None and not channel.closed:
            channel.close()

    def close(self):
        """Release backend channel, backend transport, client channel and transport."""
        if self.backend_connection is not None:
            self.backend_connection.close()
            self.backend_connection = None
        if self.client_channel is not None:
            try:
                if not self.client_channel.closed:
                    self.client_channel.close()
            except (OSError, EOFError, paramiko.SSHException) as e:
                logger.debug(f"Error closing client channel: {e}")
        self.transport.close()


def start_session(transport: paramiko.Transport, directory: CredentialDirectory, trust_store: TrustStore,
                  host_key: paramiko.PKey, config: GateConfig, source_ip: str = '?') -> SessionResult:
    """Run one client session end to end (entry point used by the listener)."""
    return SessionSupervisor(transport, directory, trust_store, host_key, config, source_ip).run()


class SpatchProxyServer:
    """SSH gateway listener - one thread per client connection"""

    def __init__(self, config: GateConfig, directory: CredentialDirectory, trust_store: TrustStore):
        self.config = config
        self.directory = directory
        self.trust_store = trust_store
        self.host_key_path = config.host_key_path
        self.host_key = self._load_or_generate_host_key()
        self.running = False
        # Registry of active sessions: session_id -> SessionSupervisor
        self.active_sessions: Dict[str, SessionSupervisor] = {}
        self.lock = threading.Lock()

    def _load_or_generate_host_key(self):
        """Load or generate SSH host key"""
        key_file = Path(self.host_key_path)

        # Create directory if not exists
        key_file.parent.mkdir(parents=True, exist_ok=True)

        if key_file.exists():
            logger.info(f"Loading SSH host key from {key_file}")
            return paramiko.RSAKey(filename=str(key_file))
        else:
            logger.info(f"Generating new SSH host key at {key_file}...")
            key = paramiko.RSAKey.generate(2048)
            key.write_private_key_file(str(key_file))
            return key

    def handle_client(self, client_socket, client_addr):
        """Handle incoming client connection"""
        source_ip = client_addr[0]
        logger.info(f"New connection from {source_ip}")

        supervisor = None
        try:
            transport = paramiko.Transport(client_socket)
            supervisor = SessionSupervisor(
                transport, self.directory, self.trust_store, self.host_key, self.config, source_ip
            )
            with self.lock:
                self.active_sessions[supervisor.session_id] = supervisor

            result = supervisor.run()

            log = logger.info if result.ok else logger.warning
            log(
                f"Session {result.session_id} closed: reason={result.reason} "
                f"user={result.username or '-'} backend={result.backend or '-'} "
                f"duration={result.duration or 0:.1f}s"
            )
        except Exception as e:
            logger.error(f"Error handling client {source_ip}: {e}", exc_info=True)
        finally:
            if supervisor is not None:
                with self.lock:
                    self.active_sessions.pop(supervisor.session_id, None)
            client_socket.close()

    def terminate_session(self, session_id: str) -> bool:
        """Close one active session; returns False if it is not known"""
        with self.lock:
            supervisor = self.active_sessions.get(session_id)
        if supervisor is None:
            return False
        supervisor.terminate()
        return True

    def terminate_all(self):
        with self.lock:
            session_ids = list(self.active_sessions)
        for session_id in session_ids:
            self.terminate_session(session_id)

    def start(self):
        """Start accepting connections"""
        logger.info(f"Starting spatch gateway {self.config.gate_name}")

        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_socket.bind((self.config.listen_host, self.config.listen_port))
        server_socket.listen(self.config.backlog)
        logger.info(f"Listening on {self.config.listen_host}:{self.config.listen_port}")

        self.running = True
        try:
            while self.running:
                readable, _, _ = select.select([server_socket], [], [], 1.0)
                if server_socket not in readable:
                    continue

                client_socket, client_addr = server_socket.accept()
                logger.debug(f"Accepted connection from {client_addr}")

                client_thread = threading.Thread(
                    target=self.handle_client,
                    args=(client_socket, client_addr)
                )
                client_thread.daemon = True
                client_thread.start()

        except KeyboardInterrupt:
            logger.info("Shutting down spatch gateway...")

        finally:
            self.running = False
            self.terminate_all()
            server_socket.close()


def configure_logging(config: GateConfig):
    """Apply level and optional rotating file handler from [logging]"""
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
    logger.setLevel(log_level)
    logger.info(f"Log level set to {config.log_level.upper()}")

    if config.log_file:
        log_dir = Path(config.log_file).parent
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_size,
            backupCount=config.log_backup_count
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)
        logger.info(f"Logging to file: {config.log_file}")


def build_server(config: GateConfig) -> SpatchProxyServer:
    directory = load_directory(config.directory_path)
    trust_store = TrustStore(config.known_hosts_path)
    return SpatchProxyServer(config, directory, trust_store)


def main(config_path: Optional[str] = None):
    """Main entry point"""
    config = get_config(config_path or os.getenv('SPATCH_CONFIG'))
    logger.info(f"Loaded configuration from {config.config_path}")
    configure_logging(config)

    proxy = build_server(config)
    proxy.start()


if __name__ == '__main__':
    main()
