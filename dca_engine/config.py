from decimal import Decimal
from pathlib import Path
from typing import List, Literal

from eth_utils import is_address
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

# Universal Router deployments on Base used by the Uniswap Trading API
DEFAULT_ROUTER_ALLOWLIST = [
    "0x6fF5693b99212Da76ad316178A184AB56D299b43",  # Universal Router v1.0
    "0x3fC91A3afd70395Cd496C647d5a6CC9D4B2b7FAD",  # Universal Router v1.2
    "0xEf1c6E67703c7BD7107eed8303Fbe6EC2554BF6B",  # Universal Router (legacy)
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")
    internal_api_key: str = Field(
        default="",
        description="Shared secret the scheduler sends as X-Internal-Key to trigger cycles (empty disables the check)",
    )

    # Chain
    chain_id: int = Field(default=8453, description="EVM chain the engine operates on (Base)")
    rpc_url: str = Field(default="", description="Override JSON-RPC endpoint for chain reads and receipts")
    alchemy_api_key: str = Field(default="", description="Alchemy API key used to build the default RPC URL")
    request_timeout_seconds: int = Field(default=30, description="HTTP timeout for collaborator calls")

    # Market signal
    fear_greed_url: str = Field(
        default="https://api.alternative.me/fng/",
        description="Primary Fear & Greed index endpoint",
    )
    signal_staleness_seconds: int = Field(
        default=43200,
        description="Maximum age of a primary sentiment reading before the backup source is used",
    )
    coingecko_api_key: str = Field(default="", description="Coingecko API key (optional for basic tier)")
    price_cache_ttl_seconds: int = Field(default=60, description="TTL for cached volatile-asset prices")

    # Routing collaborator
    trading_api_url: str = Field(
        default="https://trade-api.gateway.uniswap.org/v1",
        description="Uniswap Trading API base URL",
    )
    uniswap_api_key: str = Field(default="", description="Uniswap Trading API key")
    router_allowlist: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ROUTER_ALLOWLIST),
        description="Audited router contracts a returned swap may target",
    )
    quote_validity_seconds: float = Field(default=30.0, gt=0, description="Quote freshness window")
    quote_refresh_attempts: int = Field(
        default=2, ge=1, description="Times an expired quote may be re-fetched before the wallet fails",
    )
    max_quotes_per_cycle: int = Field(
        default=100, ge=1, description="Cap on routing quotes requested in one cycle",
    )

    # Tokens
    stablecoin_symbol: str = Field(default="USDC", description="Stablecoin symbol")
    stablecoin_address: str = Field(
        default="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        description="Stablecoin spent on buys",
    )
    stablecoin_decimals: int = Field(default=6, description="Stablecoin decimals")
    volatile_symbol: str = Field(default="WETH", description="Volatile asset symbol")
    volatile_address: str = Field(
        default="0x4200000000000000000000000000000000000006",
        description="Volatile asset bought on fear and sold on greed",
    )
    volatile_decimals: int = Field(default=18, description="Volatile asset decimals")
    volatile_coingecko_id: str = Field(default="ethereum", description="Coingecko id used to price the volatile asset")

    # Fees
    fee_bps: int = Field(default=20, ge=0, lt=10000, description="Protocol fee in basis points")
    reward_pool_address: str = Field(
        default="0x434B2A0e38FB3E5D2ACFa2a7aE492C2A53E55Ec9",
        description="Reward distribution contract receiving collected fees",
    )

    # Risk guards
    min_wallet_value_usd: Decimal = Field(
        default=Decimal("5"),
        description="Wallets whose relevant balance is worth less than this are skipped",
    )
    min_swap_usd: Decimal = Field(
        default=Decimal("0.10"),
        description="Net swap amounts worth less than this are treated as dust",
    )
    slippage_small_bps: int = Field(default=50, description="Slippage tolerance below the size threshold")
    slippage_large_bps: int = Field(default=30, description="Slippage tolerance at or above the size threshold")
    slippage_threshold_usd: Decimal = Field(default=Decimal("100"), description="Swap size threshold in USD")
    max_wallets_per_cycle: int = Field(default=100, ge=1, description="Cap on wallets processed per cycle")
    inter_wallet_delay_seconds: float = Field(default=0.5, ge=0, description="Pause between wallets")

    # Execution
    submission_mode: Literal["direct", "sponsored"] = Field(
        default="sponsored",
        description="direct = operator-paid transaction, sponsored = bundler user operation with paymaster",
    )
    delegation_manager_address: str = Field(
        default="0xdb9B1e94B5b69Df7e401DDbedE43491141047dB3",
        description="Delegation manager contract that redeems delegations",
    )
    operator_address: str = Field(default="", description="Operator EOA (fee recipient, direct-mode sender)")
    executor_smart_account: str = Field(default="", description="Executor smart account used in sponsored mode")
    erc4337_entrypoint_address: str = Field(
        default="0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789",
        description="ERC-4337 EntryPoint",
    )
    erc4337_bundler_url: str = Field(default="", description="Bundler JSON-RPC URL")
    erc4337_paymaster_url: str = Field(default="", description="Paymaster JSON-RPC URL")
    erc4337_paymaster_rpc_method: str = Field(
        default="pm_sponsorUserOperation",
        description="Paymaster sponsorship RPC method",
    )
    erc4337_account_execute_signature: str = Field(
        default="execute(address,uint256,bytes)",
        description="Executor smart account execute function signature",
    )
    signer_url: str = Field(default="", description="Remote operator signer JSON-RPC URL")
    settlement_timeout_seconds: int = Field(
        default=90, ge=60, le=120, description="Hard timeout for settlement waits",
    )
    receipt_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt polling interval")
    min_operator_balance_eth: Decimal = Field(
        default=Decimal("0.001"),
        description="Minimum operator gas balance required before a direct-mode cycle",
    )

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1, description="Attempts per network-facing call")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, description="Backoff base delay")
    retry_max_delay_seconds: float = Field(default=10.0, ge=0, description="Backoff delay cap")

    # Ledger
    convex_url: str = Field(default="", description="Convex deployment URL backing the ledger")
    convex_deploy_key: str = Field(default="", description="Convex deploy key")

    # Fee reconciliation
    fee_reconciliation_batch_size: int = Field(
        default=20, ge=0, description="Pending fee items retried at the start of each cycle",
    )
    fee_reconciliation_alert_threshold: int = Field(
        default=10, ge=1, description="Outstanding fee items that raise a backlog alert",
    )

    @field_validator("router_allowlist")
    @classmethod
    def _check_allowlist(cls, value: List[str]) -> List[str]:
        for address in value:
            if not is_address(address):
                raise ValueError(f"Invalid router address in allow-list: {address}")
        return value

    @field_validator(
        "stablecoin_address",
        "volatile_address",
        "reward_pool_address",
        "delegation_manager_address",
        "erc4337_entrypoint_address",
    )
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not is_address(value):
            raise ValueError(f"Invalid address: {value}")
        return value

    @property
    def resolved_rpc_url(self) -> str:
        if self.rpc_url:
            return self.rpc_url
        return f"https://base-mainnet.g.alchemy.com/v2/{self.alchemy_api_key}"

    @property
    def has_convex(self) -> bool:
        return bool(self.convex_url)

    @property
    def is_sponsored(self) -> bool:
        return self.submission_mode == "sponsored"

    @property
    def executor_address(self) -> str:
        """Identity delegations must name as their delegate."""
        return self.executor_smart_account if self.is_sponsored else self.operator_address


# Global settings instance
settings = Settings()
