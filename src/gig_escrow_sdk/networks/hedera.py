"""
Hedera network configurations.

The marketplace contract lives on Hedera's EVM layer, reachable through a
JSON-RPC relay (Hashio). Two denominations matter for payments:

- EVM-facing value: HBAR expressed with 18 decimals ("weibar"), used by
  ``ethereum:`` URIs and ``msg.value`` on the JSON-RPC relay
- Native value: HBAR with 8 decimals (tinybar), used by native wallets
  such as HashPack through ``hedera://pay`` URIs

Address Format:
- Native account IDs: ``shard.realm.num``, e.g. ``0.0.4515312``
- EVM addresses: 20-byte hex, ``0x`` prefixed
- Transaction memos are capped at 100 UTF-8 bytes
"""

import re
from typing import Optional

from gig_escrow_sdk.networks.base import (
    NetworkConfig,
    NetworkType,
    get_network,
    register_network,
)

# Transaction memo limit enforced by Hedera consensus nodes (bytes, UTF-8)
HEDERA_MEMO_MAX_BYTES = 100

# =============================================================================
# Hedera Networks Configuration
# =============================================================================

HEDERA_MAINNET = NetworkConfig(
    name="hedera-mainnet",
    display_name="Hedera Mainnet",
    network_type=NetworkType.HEDERA,
    chain_id=295,
    currency="HBAR",
    evm_decimals=18,
    native_decimals=8,
    native_uri_scheme="hedera",
    rpc_url="https://mainnet.hashio.io/api",
    mirror_node_url="https://mainnet.mirrornode.hedera.com",
    explorer_url="https://hashscan.io/mainnet",
    enabled=True,
    extra_config={"memo_max_bytes": HEDERA_MEMO_MAX_BYTES},
)

HEDERA_TESTNET = NetworkConfig(
    name="hedera-testnet",
    display_name="Hedera Testnet",
    network_type=NetworkType.HEDERA,
    chain_id=296,
    currency="HBAR",
    evm_decimals=18,
    native_decimals=8,
    native_uri_scheme="hedera",
    rpc_url="https://testnet.hashio.io/api",
    mirror_node_url="https://testnet.mirrornode.hedera.com",
    explorer_url="https://hashscan.io/testnet",
    enabled=True,
    extra_config={"memo_max_bytes": HEDERA_MEMO_MAX_BYTES},
)

HEDERA_PREVIEWNET = NetworkConfig(
    name="hedera-previewnet",
    display_name="Hedera Previewnet",
    network_type=NetworkType.HEDERA,
    chain_id=297,
    currency="HBAR",
    evm_decimals=18,
    native_decimals=8,
    native_uri_scheme="hedera",
    rpc_url="https://previewnet.hashio.io/api",
    mirror_node_url="https://previewnet.mirrornode.hedera.com",
    explorer_url="https://hashscan.io/previewnet",
    enabled=False,  # Reset periodically, not suitable for real orders
    extra_config={"memo_max_bytes": HEDERA_MEMO_MAX_BYTES},
)

DEFAULT_NETWORK = HEDERA_TESTNET.name

for _network in (HEDERA_MAINNET, HEDERA_TESTNET, HEDERA_PREVIEWNET):
    register_network(_network)


# =============================================================================
# Hedera-specific utilities
# =============================================================================

_ACCOUNT_ID_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_account_id(account_id: str) -> bool:
    """
    Validate a native Hedera account ID (``shard.realm.num``).

    Args:
        account_id: Account ID to validate

    Returns:
        True if the string is a well-formed account ID
    """
    if not account_id or not isinstance(account_id, str):
        return False
    return bool(_ACCOUNT_ID_PATTERN.match(account_id))


def is_valid_evm_address(address: str) -> bool:
    """Check for a 0x-prefixed 20-byte hex address (checksum not enforced)."""
    if not address or not isinstance(address, str):
        return False
    return bool(_EVM_ADDRESS_PATTERN.match(address))


def account_id_to_evm_address(account_id: str) -> str:
    """
    Convert a ``shard.realm.num`` account ID to its long-zero EVM address.

    Raises:
        ValueError: If the account ID is malformed
    """
    match = _ACCOUNT_ID_PATTERN.match(account_id or "")
    if not match:
        raise ValueError(f"Invalid Hedera account ID: {account_id}")
    shard, realm, num = (int(part) for part in match.groups())
    return "0x" + f"{shard:08x}{realm:016x}{num:016x}"


def is_hedera_network(network_name: str) -> bool:
    """Return True if the named network is a registered Hedera network."""
    network = get_network(network_name)
    if not network:
        return False
    return network.network_type == NetworkType.HEDERA


def get_explorer_tx_url(network_name: str, tx_hash: str) -> Optional[str]:
    """
    Get HashScan URL for a transaction.

    Args:
        network_name: Network name
        tx_hash: Transaction hash or ID

    Returns:
        Explorer URL or None if network not found
    """
    network = get_network(network_name)
    if not network or not network.explorer_url:
        return None
    return f"{network.explorer_url}/transaction/{tx_hash}"


def get_explorer_contract_url(network_name: str, address: str) -> Optional[str]:
    """Get HashScan URL for a contract, or None if the network is unknown."""
    network = get_network(network_name)
    if not network or not network.explorer_url:
        return None
    return f"{network.explorer_url}/contract/{address}"
