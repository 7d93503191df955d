"""
Relay roles built on the tunnel layer.

Re-exports the two entry points:
    from mircat.relay import RelayServer, RelayClient
"""

from mircat.relay.client import RelayClient
from mircat.relay.server import RelayServer

__all__ = ["RelayServer", "RelayClient"]
