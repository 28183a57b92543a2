"""Preset definitions for the networks the agent can transact on."""

from __future__ import annotations

from batch_transfer_agent.config import ChainConfig

CHAINS: dict[str, ChainConfig] = {
    "vision-testnet": ChainConfig(),
    "vision-local": ChainConfig(
        name="vision-local",
        chain_id=31337,
        rpc_url="http://127.0.0.1:8545",
    ),
    "sepolia": ChainConfig(
        name="sepolia",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        timelock_address="",
        tokens={},
    ),
}


def get_chain(name: str) -> ChainConfig:
    """Get a preset by name. Raises ``KeyError`` if not found."""
    if name not in CHAINS:
        raise KeyError(
            f"Unknown chain '{name}'. Available: {list_chain_names()}"
        )
    return CHAINS[name].model_copy(deep=True)


def list_chain_names() -> list[str]:
    """Return the names of all preset chains."""
    return list(CHAINS.keys())
