"""Network registry. Importing this package registers the Hedera networks."""

from gig_escrow_sdk.networks.base import (
    NetworkConfig,
    NetworkType,
    get_network,
    get_network_by_chain_id,
    list_networks,
    register_network,
)
from gig_escrow_sdk.networks.hedera import (
    DEFAULT_NETWORK,
    HEDERA_MAINNET,
    HEDERA_MEMO_MAX_BYTES,
    HEDERA_PREVIEWNET,
    HEDERA_TESTNET,
    account_id_to_evm_address,
    get_explorer_contract_url,
    get_explorer_tx_url,
    is_hedera_network,
    is_valid_account_id,
    is_valid_evm_address,
)

__all__ = [
    "NetworkConfig",
    "NetworkType",
    "get_network",
    "get_network_by_chain_id",
    "list_networks",
    "register_network",
    "DEFAULT_NETWORK",
    "HEDERA_MAINNET",
    "HEDERA_MEMO_MAX_BYTES",
    "HEDERA_PREVIEWNET",
    "HEDERA_TESTNET",
    "account_id_to_evm_address",
    "get_explorer_contract_url",
    "get_explorer_tx_url",
    "is_hedera_network",
    "is_valid_account_id",
    "is_valid_evm_address",
]
