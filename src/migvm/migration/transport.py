"""
Migration transport.

Moves an encoded VM state from one host to another over a single TCP
connection:

    sender                              receiver
    ------                              --------
    connect(address, 8080)  ------->    accept()
    send 4-byte length (big-endian)     read 4 bytes
    send migration buffer    ------->   read exactly that many bytes
    close                               decode, resume

The sender never waits for an acknowledgement. Once the bytes are handed
to the kernel it cannot tell "delivered" apart from "peer accepted and
then crashed mid-read". Until the receiver has decoded the buffer, both
hosts are the owner of record for the VM - the source is stopped and the
destination has not resumed. Nothing here retries or reconciles that.

Both sides use explicit timeouts so an unresponsive peer fails the
transfer with a TransportError instead of hanging the process.
"""

import logging
import socket
import struct
from dataclasses import dataclass

from migvm.state.codec import FormatError, decode_migration, encode_migration
from migvm.vcpu.registers import VMState

logger = logging.getLogger(__name__)

# Well-known migration port
MIGRATION_PORT = 8080

_LENGTH = struct.Struct("!I")


class TransportError(RuntimeError):
    """Raised when a migration transfer cannot be completed."""


@dataclass
class TransportConfig:
    """
    Transport settings.

    Attributes:
        bind_host: Interface the receiver listens on
        port: TCP port for both sides
        connect_timeout: Seconds to wait for the sender's connect()
        read_timeout: Seconds to wait on any single send/recv
        accept_timeout: Seconds the receiver waits for a sender
                        (None waits forever)
        max_payload: Largest length prefix the receiver accepts
    """
    bind_host: str = "0.0.0.0"
    port: int = MIGRATION_PORT
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    accept_timeout: float | None = None
    max_payload: int = 64 * 1024


def send_state(address: str, state: VMState, config: TransportConfig | None = None):
    """
    Send a VM state to the receiver at address.

    Args:
        address: IPv4 address of the destination host.
        state: The state to transfer (PC = index of the MIGRATE).
        config: Transport settings (port, timeouts).

    Raises:
        TransportError: If connecting or writing fails.
    """
    config = config or TransportConfig()
    payload = encode_migration(state)

    try:
        with socket.create_connection(
            (address, config.port), timeout=config.connect_timeout
        ) as sock:
            sock.settimeout(config.read_timeout)
            sock.sendall(_LENGTH.pack(len(payload)) + payload)
    except OSError as e:
        raise TransportError(
            f"send to {address}:{config.port} failed: {e}"
        ) from e

    logger.info(
        f"Sent {len(payload)} byte migration buffer to {address}:{config.port} "
        f"(PC {state.pc})"
    )


class MigrationSender:
    """
    Migrate hook for a vCPU on the sending side.

    Usage:
        vcpu = VCPU("vm1", on_migrate=MigrationSender(TransportConfig(port=9000)))
    """

    def __init__(self, config: TransportConfig | None = None):
        self._config = config or TransportConfig()
        self.sent = 0

    def __call__(self, vcpu, address: str):
        send_state(address, vcpu.state, self._config)
        self.sent += 1


def _recv_exact(conn: socket.socket, size: int, what: str) -> bytes:
    """Read exactly size bytes, or fail if the peer closes early."""
    chunks = []
    remaining = size
    while remaining:
        chunk = conn.recv(min(remaining, 4096))
        if not chunk:
            raise FormatError(
                f"connection closed after {size - remaining} of {size} {what} bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class MigrationListener:
    """
    Receives one migrated VM state per receive() call.

    The listening socket lives only as long as the listener: open it,
    receive, close it. Use it as a context manager so the socket is
    released even when the transfer fails.

    Usage:
        with MigrationListener(TransportConfig(port=0)) as listener:
            print(f"listening on {listener.port}")
            state = listener.receive()
    """

    def __init__(self, config: TransportConfig | None = None):
        self._config = config or TransportConfig()
        self._sock: socket.socket | None = None

    def open(self):
        """
        Bind and start listening.

        Raises:
            TransportError: If the port cannot be bound.
        """
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._config.bind_host, self._config.port))
            sock.listen(1)
        except OSError as e:
            sock.close()
            raise TransportError(
                f"cannot listen on {self._config.bind_host}:{self._config.port}: {e}"
            ) from e
        self._sock = sock
        logger.info(f"Listening for migrations on port {self.port}")

    @property
    def port(self) -> int:
        """The bound port (useful when the config asked for port 0)."""
        if self._sock is None:
            raise TransportError("listener is not open")
        return self._sock.getsockname()[1]

    def receive(self) -> VMState:
        """
        Accept one connection and decode the state it carries.

        Returns:
            The received VMState, with the PC exactly as the sender sent it.

        Raises:
            TransportError: On accept/read timeout, reset or other I/O error.
            FormatError: If the length prefix is too large, the peer closes
                         before the full buffer arrives, or the buffer does
                         not decode.
        """
        self.open()
        self._sock.settimeout(self._config.accept_timeout)

        try:
            conn, peer = self._sock.accept()
        except OSError as e:
            raise TransportError(f"accept failed: {e}") from e

        with conn:
            conn.settimeout(self._config.read_timeout)
            try:
                header = _recv_exact(conn, _LENGTH.size, "length prefix")
                (size,) = _LENGTH.unpack(header)
                if size > self._config.max_payload:
                    raise FormatError(
                        f"migration buffer of {size} bytes exceeds limit "
                        f"of {self._config.max_payload}"
                    )
                payload = _recv_exact(conn, size, "payload")
            except OSError as e:
                raise TransportError(f"read from {peer[0]} failed: {e}") from e

        state = decode_migration(payload)
        logger.info(
            f"Received {len(payload)} byte migration buffer from {peer[0]} "
            f"(PC {state.pc})"
        )
        return state

    def close(self):
        """Stop listening."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self):
        """Support for 'with' statement."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Close the socket when exiting 'with' block."""
        self.close()
        return False
