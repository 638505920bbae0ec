from __future__ import annotations

from pathlib import Path

import pytest

from chronodid.core.config import Config
from chronodid.core.exceptions import ConfigError


def _write_config(tmp_path: Path, default: str, networks: dict[str, str]) -> Path:
    cfg_dir = tmp_path / "config"
    (cfg_dir / "networks").mkdir(parents=True)
    (cfg_dir / "default.yaml").write_text(default)
    for name, body in networks.items():
        (cfg_dir / "networks" / f"{name}.yaml").write_text(body)
    return cfg_dir / "default.yaml"


def test_repo_defaults_load_local_preset(test_config: Config) -> None:
    assert test_config.network == "local"
    assert test_config.ledger.chain_id == 31337
    assert test_config.ledger.registry_address == "0x5fbdb2315678afecb367f032d93f642f64180aa3"
    assert test_config.db_path.name == "chronodid.db"


def test_network_override_selects_preset(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        "network: local\n",
        {
            "local": "ledger:\n  chain_id: 31337\n",
            "sepolia": "ledger:\n  chain_id: 11155111\n  rpc_url: https://rpc.sepolia.example\n",
        },
    )
    cfg = Config.from_yaml(path, network="sepolia")
    assert cfg.network == "sepolia"
    assert cfg.ledger.chain_id == 11155111
    assert cfg.ledger.rpc_url == "https://rpc.sepolia.example"


def test_file_values_win_over_preset(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        "network: local\nledger:\n  timeout_s: 1.5\n",
        {"local": "ledger:\n  timeout_s: 10\n  chain_id: 31337\n"},
    )
    cfg = Config.from_yaml(path)
    assert cfg.ledger.timeout_s == 1.5
    assert cfg.ledger.chain_id == 31337


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path, "network: local\n", {"local": "ledger:\n  rpc_url: http://127.0.0.1:8545\n"})
    monkeypatch.setenv("CHRONODID_LEDGER__RPC_URL", "http://node.internal:8545")
    cfg = Config.from_yaml(path)
    assert cfg.ledger.rpc_url == "http://node.internal:8545"


def test_missing_file_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_yaml(tmp_path / "nope.yaml")


def test_unknown_network_is_config_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "network: mainnet\n", {})
    with pytest.raises(ConfigError):
        Config.from_yaml(path)


def test_bad_registry_address_is_config_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "network: custom\nledger:\n  registry_address: nope\n", {})
    with pytest.raises(ConfigError):
        Config.from_yaml(path)


def test_zero_chunk_size_is_config_error(tmp_path: Path) -> None:
    path = _write_config(tmp_path, "network: custom\nindexer:\n  log_chunk_blocks: 0\n", {})
    with pytest.raises(ConfigError):
        Config.from_yaml(path)
