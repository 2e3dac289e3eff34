from pathlib import Path

import pytest

from tapscribe.config import (
    DEFAULT_INDEXER_URLS,
    ConfigurationError,
    TapscribeConfig,
    load_config,
)


def test_defaults_without_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("tapscribe.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    config = load_config(env={})
    assert isinstance(config, TapscribeConfig)
    assert config.network == "mainnet"
    assert config.indexer_url == DEFAULT_INDEXER_URLS["mainnet"]
    assert config.padding == 546
    assert config.min_fee_rate == 6
    assert config.tip == 0


def test_environment_beats_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "tapscribe.yaml"
    config_path.write_text(
        """
        indexer:
          network: testnet
          url: https://yaml.example/api/
          poll_interval: 10
        inscribe:
          padding: 600
          tip: 1000
          tipping_address: tb1pyaml
        """
    )
    env_map = {
        "TAPSCRIBE_NETWORK": "signet",
        "TAPSCRIBE_PADDING": "700",
    }

    config = load_config(config_path=config_path, env=env_map)

    assert config.network == "signet"
    assert config.padding == 700
    assert config.indexer_url == "https://yaml.example/api"
    assert config.poll_interval == 10.0
    assert config.tip == 1000
    assert config.tipping_address == "tb1pyaml"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    config = load_config(
        config_path=_empty_yaml(tmp_path),
        env={"TAPSCRIBE_NETWORK": "signet", "TAPSCRIBE_JOB_PATH": str(tmp_path / "env.json")},
        overrides={"network": "testnet", "job_path": str(tmp_path / "cli.json"), "indexer_url": None},
    )
    assert config.network == "testnet"
    assert config.indexer_url == DEFAULT_INDEXER_URLS["testnet"]
    assert config.job_path == tmp_path / "cli.json"


def _empty_yaml(tmp_path: Path) -> Path:
    path = tmp_path / "empty.yaml"
    path.write_text("")
    return path


def test_invalid_network_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(config_path=_empty_yaml(tmp_path), env={"TAPSCRIBE_NETWORK": "regtest"})


@pytest.mark.parametrize("raw", ["-5", "many"])
def test_invalid_numbers_rejected(tmp_path: Path, raw: str) -> None:
    with pytest.raises(ConfigurationError):
        load_config(config_path=_empty_yaml(tmp_path), env={"TAPSCRIBE_PADDING": raw})


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(config_path=tmp_path / "absent.yaml", env={})


def test_non_mapping_section_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("indexer: [1, 2]\n")
    with pytest.raises(ConfigurationError):
        load_config(config_path=path, env={})
