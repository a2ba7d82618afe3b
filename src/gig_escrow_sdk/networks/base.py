"""
Network configuration registry.

A NetworkConfig describes the single network a marketplace contract is
deployed on: its EVM-facing chain ID and decimals (used by ``ethereum:``
URIs) and its native-ledger denomination (used by native wallet URIs).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class NetworkType(str, Enum):
    """Ledger family a network belongs to."""

    EVM = "evm"
    HEDERA = "hedera"  # EVM-compatible JSON-RPC relay over a native ledger


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of a supported network."""

    name: str
    display_name: str
    network_type: NetworkType
    chain_id: int
    currency: str
    evm_decimals: int
    native_decimals: int
    native_uri_scheme: str
    rpc_url: str
    mirror_node_url: str = ""
    explorer_url: str = ""
    enabled: bool = True
    extra_config: Dict[str, Any] = field(default_factory=dict)

    @property
    def caip2(self) -> str:
        """CAIP-2 chain identifier, e.g. ``eip155:296``."""
        return f"eip155:{self.chain_id}"


_NETWORKS: Dict[str, NetworkConfig] = {}


def register_network(network: NetworkConfig) -> None:
    """Register (or replace) a network under its lowercase name."""
    _NETWORKS[network.name.lower()] = network


def get_network(name: str) -> Optional[NetworkConfig]:
    """
    Look up a network by name.

    Args:
        name: Network identifier (case-insensitive)

    Returns:
        NetworkConfig or None if not registered
    """
    if not name:
        return None
    return _NETWORKS.get(name.lower())


def get_network_by_chain_id(chain_id: int) -> Optional[NetworkConfig]:
    """Return the first registered network with the given chain ID."""
    for network in _NETWORKS.values():
        if network.chain_id == chain_id:
            return network
    return None


def list_networks(enabled_only: bool = False) -> List[NetworkConfig]:
    """
    List registered networks.

    Args:
        enabled_only: Skip networks flagged as disabled

    Returns:
        NetworkConfig instances in registration order
    """
    return [n for n in _NETWORKS.values() if n.enabled or not enabled_only]
