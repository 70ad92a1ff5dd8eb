"""
Relay submission with health checks and failover.

Usage:
    from shieldpool.relayer import RelayerFailoverManager
"""

from shieldpool.relayer.failover import RelayEndpoint, RelayerFailoverManager, RelayReceipt

__all__ = ["RelayEndpoint", "RelayReceipt", "RelayerFailoverManager"]
