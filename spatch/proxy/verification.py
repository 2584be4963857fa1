"""
Host Verification - trust-on-first-use check of a backend host key

Warnings and the trust prompt go to the client's stderr stream; the answer
is read with the line editor. A changed or ambiguous key is never accepted.
"""
import logging

import paramiko

from spatch.core import trust_store
from spatch.core.trust_store import LOAD_ERRORS, HostKeyConflict, TrustStore
from spatch.proxy.errors import IOFailure, TrustDeclined, TrustStoreError, TrustViolation
from spatch.proxy.line_editor import read_line

logger = logging.getLogger(__name__)

ANSWER_CAPACITY = 10


def is_approval(answer: str) -> bool:
    """Only an answer starting with 'yes' (any case) trusts the host."""
    return answer[:3].lower() == 'yes'


class HostVerifier:
    """Checks a backend key against the trust store, asking the client when unknown."""

    def __init__(self, store: TrustStore, client_channel):
        self.store = store
        self.channel = client_channel

    def warn(self, text: str):
        try:
            self.channel.send_stderr(text.encode('utf-8'))
        except OSError as e:
            raise IOFailure(f"write to client failed: {e}")

    def verify(self, host: str, port: int, key: paramiko.PKey):
        """Return normally if the key is trusted.

        Raises:
            TrustViolation: key changed, other key type recorded, or store unreadable
            TrustDeclined: user did not approve an unknown key
            TrustStoreError: approved key could not be persisted
        """
        result = self.store.check(host, port, key)
        logger.debug(f"Host key check for {result.identity}: {result.state}")

        if result.state == trust_store.KNOWN_OK:
            return

        if result.state == trust_store.KNOWN_CHANGED:
            self.warn(
                f"Host key for server changed: it is now: {result.fingerprint}\r\n"
                "For security reasons, connection will be stopped\r\n"
            )
            logger.warning(f"Host key for {result.identity} changed, now {result.fingerprint}")
            raise TrustViolation(f"host key for {result.identity} changed")

        if result.state == trust_store.FOUND_OTHER:
            self.warn(
                "The host key for this server was not found but an other type of key exists.\r\n"
                "An attacker might change the default server key to "
                "confuse your client into thinking the key does not exist\r\n"
            )
            logger.warning(f"Host key type {key.get_name()} not recorded for {result.identity}, other type exists")
            raise TrustViolation(f"other key type recorded for {result.identity}")

        if result.state == trust_store.ERROR:
            self.warn(f"Error {result.error}\r\n")
            raise TrustViolation(f"cannot verify {result.identity}: {result.error}")

        if result.state == trust_store.FILE_NOT_FOUND:
            self.warn(
                "Could not find known host file.\r\n"
                "If you accept the host key here, the file will be automatically created.\r\n"
            )

        self._ask(host, port, key, result)

    def _ask(self, host: str, port: int, key: paramiko.PKey, result):
        self.warn(
            "The server is unknown. Do you trust the host key?\r\n"
            f"Public key hash: {result.fingerprint}\r\n"
        )
        answer = read_line(self.channel, ANSWER_CAPACITY)
        if not is_approval(answer):
            logger.info(f"Host key for {result.identity} not accepted")
            raise TrustDeclined(f"host key for {result.identity} declined")

        try:
            self.store.add(host, port, key)
        except HostKeyConflict as e:
            self.warn(
                f"Host key for server changed: it is now: {result.fingerprint}\r\n"
                "For security reasons, connection will be stopped\r\n"
            )
            raise TrustViolation(str(e))
        except LOAD_ERRORS as e:
            self.warn(f"Error {getattr(e, 'strerror', None) or e}\r\n")
            logger.error(f"Failed to record host key for {result.identity}: {e}")
            raise TrustStoreError(f"cannot write trust store: {e}")
