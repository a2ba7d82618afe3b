"""
SDK configuration.

Example:
    >>> config = EscrowConfig(contract_address="0x...")
    >>> config = EscrowConfig.from_env()  # GIG_ESCROW_* variables
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from gig_escrow_sdk.networks import DEFAULT_NETWORK, NetworkConfig, get_network, is_valid_evm_address

ENV_PREFIX = "GIG_ESCROW_"


class EscrowConfig(BaseModel):
    """Settings shared by the gateway, reconciler and payment flow."""

    contract_address: str = Field(..., alias="contractAddress")
    network: str = DEFAULT_NETWORK
    rpc_url: Optional[str] = Field(None, alias="rpcUrl")
    mirror_node_url: Optional[str] = Field(None, alias="mirrorNodeUrl")
    sender_address: Optional[str] = Field(None, alias="senderAddress")

    # Polling: base interval, +/- jitter fraction, backoff on consecutive errors
    poll_interval: float = Field(10.0, alias="pollInterval")
    poll_jitter: float = Field(0.2, alias="pollJitter")
    poll_backoff_factor: float = Field(2.0, alias="pollBackoffFactor")
    poll_max_interval: float = Field(120.0, alias="pollMaxInterval")

    max_concurrent_reads: int = Field(8, alias="maxConcurrentReads")
    receipt_timeout: float = Field(120.0, alias="receiptTimeout")
    request_timeout: float = Field(30.0, alias="requestTimeout")

    class Config:
        populate_by_name = True

    @field_validator("contract_address", "sender_address")
    @classmethod
    def _check_address(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_evm_address(value):
            raise ValueError(f"Invalid EVM address: {value}")
        return value

    @field_validator("network")
    @classmethod
    def _check_network(cls, value: str) -> str:
        if get_network(value) is None:
            raise ValueError(f"Unknown network: {value}")
        return value.lower()

    @field_validator("poll_interval", "poll_max_interval", "receipt_timeout", "request_timeout")
    @classmethod
    def _check_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("poll_jitter")
    @classmethod
    def _check_jitter(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError("poll_jitter must be in [0, 1)")
        return value

    @field_validator("poll_backoff_factor")
    @classmethod
    def _check_backoff(cls, value: float) -> float:
        if value < 1:
            raise ValueError("poll_backoff_factor must be >= 1")
        return value

    @field_validator("max_concurrent_reads")
    @classmethod
    def _check_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_concurrent_reads must be >= 1")
        return value

    @model_validator(mode="after")
    def _check_intervals(self) -> "EscrowConfig":
        if self.poll_max_interval < self.poll_interval:
            raise ValueError("poll_max_interval must be >= poll_interval")
        return self

    @property
    def network_config(self) -> NetworkConfig:
        network = get_network(self.network)
        if network is None:
            raise ValueError(f"Unknown network: {self.network}")
        return network

    @property
    def resolved_rpc_url(self) -> str:
        return self.rpc_url or self.network_config.rpc_url

    @property
    def resolved_mirror_node_url(self) -> str:
        return self.mirror_node_url or self.network_config.mirror_node_url

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: object) -> "EscrowConfig":
        """
        Load settings from ``GIG_ESCROW_*`` environment variables.

        ``GIG_ESCROW_CONTRACT_ADDRESS`` maps to ``contract_address`` and so on;
        keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
