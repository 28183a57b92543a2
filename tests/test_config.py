"""Tests for profile configuration."""

from batch_transfer_agent.config import (
    AgentServiceConfig,
    get_profile_dir,
    list_profiles,
    load_config,
    save_config,
    slugify,
)


def test_slugify():
    assert slugify("My Wallet") == "my-wallet"
    assert slugify("  ") == "default"


def test_save_and_load_round_trip(tmp_path):
    config = AgentServiceConfig(user_id="alice")
    config.agent.interval_seconds = 2
    path = get_profile_dir("Main", tmp_path) / "config.yaml"
    save_config(config, path)

    loaded = load_config(path)
    assert loaded.user_id == "alice"
    assert loaded.agent.interval_seconds == 2
    assert loaded.chain.tokens == config.chain.tokens
    assert list_profiles(tmp_path) == ["main"]


def test_env_vars_are_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("GATEWAY_TOKEN", "secret-token")
    path = tmp_path / "config.yaml"
    path.write_text(
        "gateway:\n  api_token: ${GATEWAY_TOKEN}\nchain:\n  admin_private_key: ${UNSET_VAR}\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.gateway.api_token == "secret-token"
    assert config.chain.admin_private_key == "${UNSET_VAR}"
    assert config.scheduler.max_retries == 3


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    config = load_config(path)
    assert config.native_token == "VCN"
    assert config.wallet_dir == "wallet"


def test_profile_dir_without_create(tmp_path):
    profile_dir = get_profile_dir("ghost", tmp_path, create=False)
    assert not profile_dir.exists()
    assert list_profiles(tmp_path) == []
