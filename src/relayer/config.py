"""
Configuration management for the Operation Relayer.

Supports configuration via environment variables and .env files.
"""

from enum import Enum
from typing import Optional

from eth_utils import is_address, to_checksum_address
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(ValueError):
    """Raised when configuration data is invalid or missing."""


class RpcTransport(str, Enum):
    """Supported transports for the JSON-RPC node connection."""
    HTTP = "http"
    WEBSOCKET = "websocket"


class FeeStrategy(str, Enum):
    """How the fee parameters of a batch transaction are chosen."""
    NODE = "node"                  # Scale the node's suggested prices
    FIXED = "fixed"                # Use configured prices as-is
    PASSTHROUGH = "passthrough"    # Bid what the least generous operation offers


class RelayerConfig(BaseSettings):
    """
    Configuration settings for the Operation Relayer.

    All settings can be configured via environment variables with the RELAYER_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAYER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Chain settings
    chain_id: int = Field(
        default=1,
        ge=1,
        description="Chain ID the relayer signs for"
    )
    rpc_url: str = Field(
        default="http://localhost:8545",
        description="JSON-RPC endpoint of the chain node"
    )
    rpc_transport: RpcTransport = Field(
        default=RpcTransport.HTTP,
        description="Transport used to reach the node"
    )
    rpc_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Per-request timeout for node calls"
    )

    # Entry point settings
    entry_point_address: Optional[str] = Field(
        default=None,
        description="Address of the deployed entry point contract"
    )

    # Relayer wallet settings
    relayer_private_key: Optional[str] = Field(
        default=None,
        description="Hex-encoded private key of the relayer account"
    )
    relayer_key_path: Optional[str] = Field(
        default=None,
        description="Path to a file holding the relayer's hex private key"
    )
    beneficiary_address: Optional[str] = Field(
        default=None,
        description="Recipient of collected fees (defaults to the relayer address)"
    )

    # Batching parameters
    max_batch_size: int = Field(
        default=10,
        ge=1,
        description="Maximum number of operations in a single handleOps call"
    )
    simulation_max_age_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Accepted simulations older than this are refused at submission"
    )

    # Fee settings
    fee_strategy: FeeStrategy = Field(
        default=FeeStrategy.NODE,
        description="Policy used to price batch transactions"
    )
    legacy_transactions: bool = Field(
        default=False,
        description="Send pre-EIP-1559 transactions with a single gas price"
    )
    fixed_max_fee_per_gas: Optional[int] = Field(
        default=None,
        ge=0,
        description="maxFeePerGas (or gasPrice) for the fixed fee strategy"
    )
    fixed_max_priority_fee_per_gas: Optional[int] = Field(
        default=None,
        ge=0,
        description="maxPriorityFeePerGas for the fixed fee strategy"
    )
    fee_multiplier_percent: int = Field(
        default=100,
        ge=1,
        description="Percentage applied to node-suggested fees"
    )

    # Gas settings
    handle_ops_gas_limit: Optional[int] = Field(
        default=None,
        ge=21000,
        description="Fixed gas limit for handleOps (estimated when unset)"
    )
    gas_limit_multiplier_percent: int = Field(
        default=120,
        ge=100,
        description="Buffer applied to the estimated handleOps gas"
    )

    # Receipt monitoring
    receipt_timeout_seconds: int = Field(
        default=120,
        ge=1,
        description="Maximum time to wait for a batch receipt"
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between receipt polls"
    )

    # Request tracking
    pool_retention_seconds: float = Field(
        default=3600.0,
        ge=0,
        description="Finished requests and batches older than this are dropped from the pool"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format"
    )

    @field_validator("entry_point_address", "beneficiary_address")
    @classmethod
    def _checksum_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        if not is_address(value):
            raise ValueError(f"Invalid address: {value}")
        return to_checksum_address(value)

    @model_validator(mode="after")
    def _check_fixed_fees(self) -> "RelayerConfig":
        if self.fee_strategy == FeeStrategy.FIXED and self.fixed_max_fee_per_gas is None:
            raise ValueError("fixed_max_fee_per_gas is required for the fixed fee strategy")
        return self

    def ensure_entry_point(self) -> str:
        """Return the entry point address or raise if it is missing."""
        if not self.entry_point_address:
            raise ConfigError("Entry point address required but not configured")
        return self.entry_point_address

    @property
    def is_websocket(self) -> bool:
        """Whether the node URL should be reached over WebSocket."""
        if self.rpc_transport == RpcTransport.WEBSOCKET:
            return True
        return self.rpc_url.startswith(("ws://", "wss://"))


# Global config instance
_config: Optional[RelayerConfig] = None


def get_config() -> RelayerConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = RelayerConfig()
    return _config


def set_config(config: RelayerConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
