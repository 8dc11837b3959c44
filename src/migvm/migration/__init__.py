"""
Live migration package.

Provides the TCP transport that carries a VM's registers and PC to
another host.
"""

from .transport import (
    MIGRATION_PORT,
    MigrationListener,
    MigrationSender,
    TransportConfig,
    TransportError,
    send_state,
)

__all__ = [
    "MIGRATION_PORT",
    "MigrationListener",
    "MigrationSender",
    "TransportConfig",
    "TransportError",
    "send_state",
]
