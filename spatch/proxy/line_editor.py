"""
Line Editor - minimal interactive line input over an SSH channel

Reads one byte at a time, echoes it back and supports in-place correction
with the delete key. edit_line() holds all editing rules so they can be
exercised without a live channel.
"""
import logging
from typing import Tuple

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024

CR = 0x0d
DEL = 0x7f


def edit_line(buffer: bytes, byte: int, capacity: int = DEFAULT_CAPACITY) -> Tuple[bytes, bytes, bool]:
    """Apply one input byte to the line being edited.

    Args:
        buffer: Line accumulated so far
        byte: Next input byte (0-255)
        capacity: Buffer size; the line holds at most capacity - 1 bytes

    Returns:
        (new buffer, bytes to echo to the peer, line finished?)
    """
    if byte == CR:
        return buffer, b'\r\n', True

    if byte == DEL:
        # Redraw: blank out the old line, then print the corrected one
        new_buffer = buffer[:-1]
        echo = b'\r' + b' ' * len(buffer) + b'\r' + new_buffer
        return new_buffer, echo, False

    echo = bytes([byte])
    # Only printable ASCII is kept; control and 8-bit bytes are echoed only
    if byte <= 31 or byte >= 128:
        return buffer, echo, False

    if len(buffer) < capacity - 1:
        buffer += echo
    return buffer, echo, False


def read_line(channel, capacity: int = DEFAULT_CAPACITY) -> str:
    """Read one line from channel, echoing as the user types.

    End of stream or a channel error ends the read early; whatever was
    typed so far is returned (possibly an empty string).
    """
    buffer = b''
    while True:
        try:
            data = channel.recv(1)
            if not data:
                logger.debug("End of stream while reading line")
                break
            buffer, echo, done = edit_line(buffer, data[0], capacity)
            channel.send(echo)
        except OSError as e:
            logger.debug(f"Channel error while reading line: {e}")
            break
        if done:
            break
    return buffer.decode('ascii')
