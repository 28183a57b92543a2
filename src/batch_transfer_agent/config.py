"""Configuration system for the batch transfer agent.

Loads profile config from ``.batch-transfer-agent/<profile>/config.yaml``,
supports environment variable expansion, and exposes the timing constants
of the execution agent and scheduler as overridable settings.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class ChainConfig(BaseModel):
    """The EVM network the agent transacts on."""

    name: str = "vision-testnet"
    chain_id: int = 3151909
    rpc_url: str = "https://api.visionchain.co/rpc-proxy"
    timelock_address: str = "0x367761085BF3C12e5DA2Df99AC6E1a824612b8fb"
    tokens: dict[str, str] = Field(
        default_factory=lambda: {"VCN": "0x5FbDB2315678afecb367f032d93F642f64180aa3"}
    )
    admin_private_key: str = ""       # ${ADMIN_PK}, funds legacy top-ups
    executor_private_key: str = ""    # ${EXECUTOR_PK}, runs due time-locks


class GatewayConfig(BaseModel):
    """Paymaster gateway used for gasless sends and gasless scheduling."""

    url: str = "https://us-central1-visionchain-d19ed.cloudfunctions.net/agentGateway"
    api_token: str = ""               # ${GATEWAY_TOKEN}
    paymaster_address: str = "0x08A1B183a53a0f8f1D875945D504272738E3AF34"
    fee: str = "1.0"
    permit_ttl_seconds: int = 3600
    timeout_seconds: float = 30.0


class RegistryConfig(BaseModel):
    """Global name-service directory. Disabled when ``url`` is empty."""

    url: str = ""
    timeout_seconds: float = 10.0


class AgentSettings(BaseModel):
    """Timing and retry constants of the execution agent.

    Tests shrink these to zero.
    """

    interval_seconds: float = 10.0
    retention_seconds: float = 60.0
    balance_poll_attempts: int = 3
    balance_poll_backoff_seconds: float = 3.0
    topup_settle_seconds: float = 8.0
    topup_margin: str = "1"


class SchedulerSettings(BaseModel):
    max_retries: int = 3
    batch_size: int = 50
    lock_timeout_seconds: int = 120
    interval_seconds: float = 60.0


class DashboardConfig(BaseModel):
    port: int = 8430
    host: str = "127.0.0.1"


class AgentServiceConfig(BaseModel):
    """Root configuration object of one wallet profile."""

    user_id: str = "local-user"
    native_token: str = "VCN"
    chain: ChainConfig = Field(default_factory=ChainConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    wallet_dir: str = "wallet"  # relative to the profile dir; holds keystore.json


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def slugify(name: str) -> str:
    """Convert a profile name to a filesystem-safe slug.

    ``"My Wallet"`` -> ``"my-wallet"``, ``""`` -> ``"default"``.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "default"


def get_root_dir(base: Path | None = None) -> Path:
    """Return the ``.batch-transfer-agent/`` root directory (no auto-create)."""
    if base is None:
        base = Path.cwd()
    return base / ".batch-transfer-agent"


def get_profile_dir(
    profile: str = "default",
    base: Path | None = None,
    *,
    create: bool = True,
) -> Path:
    """Return the directory for a wallet profile, e.g. ``.batch-transfer-agent/<slug>/``.

    Parameters
    ----------
    profile:
        Profile name; slugified.
    base:
        Parent directory that contains (or will contain) the root folder.
        Defaults to the current working directory.
    create:
        If *True* (default), create the directory tree if it doesn't exist.
    """
    profile_dir = get_root_dir(base) / slugify(profile)
    if create:
        profile_dir.mkdir(parents=True, exist_ok=True)
    return profile_dir


def list_profiles(base: Path | None = None) -> list[str]:
    """Return slugs of all profiles (subdirs containing ``config.yaml``)."""
    root = get_root_dir(base)
    if not root.is_dir():
        return []
    return sorted(
        d.name
        for d in root.iterdir()
        if d.is_dir() and (d / "config.yaml").exists()
    )


def load_config(path: Path) -> AgentServiceConfig:
    """Load and validate a profile configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation.
    """
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return AgentServiceConfig.model_validate(expanded)


def save_config(config: AgentServiceConfig, path: Path) -> None:
    """Serialize an :class:`AgentServiceConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
