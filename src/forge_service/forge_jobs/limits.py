"""
Engine Limits

Immutable ceilings, timeouts and allowlists shared by every Forge job component.
Built once from ForgeSettings and passed into each component at construction.
"""
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_SUPPORTED_CHAINS: Dict[int, str] = {
    1: "https://eth.llamarpc.com",
    10: "https://optimism.llamarpc.com",
    8453: "https://base.llamarpc.com",
    42161: "https://arbitrum.llamarpc.com",
    11155111: "https://sepolia.llamarpc.com",
    84532: "https://base-sepolia.llamarpc.com",
}

# Read-only chain queries. Anything that signs, sends or manages accounts stays out.
DEFAULT_ALLOWED_RPC_METHODS: FrozenSet[str] = frozenset({
    "eth_call",
    "eth_getCode",
    "eth_getBalance",
    "eth_getStorageAt",
    "eth_getBlockByNumber",
    "eth_getBlockByHash",
    "eth_getTransactionByHash",
    "eth_getTransactionReceipt",
    "eth_getLogs",
    "eth_chainId",
    "eth_blockNumber",
    "net_version",
})


class EngineLimits(BaseModel):
    """Configuration value for the Forge job engine."""

    model_config = ConfigDict(frozen=True)

    # Input validation
    max_files: int = 50
    max_file_size: int = 500 * 1024
    max_total_size: int = 5 * 1024 * 1024

    # Execution timeouts (seconds)
    compile_timeout_seconds: float = 30.0
    test_timeout_seconds: float = 120.0
    script_timeout_seconds: float = 120.0

    # Lifecycle
    job_ttl_minutes: int = 30
    stale_job_minutes: int = 10
    orphan_grace_minutes: int = 2

    # Output streaming
    stream_poll_interval: float = 1.0
    stream_max_polls: int = 120
    max_output_chars: int = 1_000_000

    supported_chains: Dict[int, str] = Field(
        default_factory=lambda: dict(DEFAULT_SUPPORTED_CHAINS)
    )
    allowed_rpc_methods: FrozenSet[str] = DEFAULT_ALLOWED_RPC_METHODS

    def timeout_for(self, kind: str) -> float:
        """Wall-clock timeout for a job kind."""
        if kind == "compile":
            return self.compile_timeout_seconds
        if kind == "script":
            return self.script_timeout_seconds
        return self.test_timeout_seconds

    def rpc_url(self, chain_id: int) -> Optional[str]:
        """Allow-listed RPC endpoint for a chain, or None."""
        return self.supported_chains.get(chain_id)
