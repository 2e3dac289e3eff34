"""Shared configuration loader for tapscribe."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".tapscribe.yaml"
DEFAULT_JOB_PATH = Path.home() / ".tapscribe" / "pending.json"
_CONFIG_PATH_OVERRIDE: Path | None = None

DEFAULT_INDEXER_URLS = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
}

DEFAULT_PADDING = 546
DEFAULT_MIN_FEE_RATE = 6
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_RETRY_DELAY = 2.0


@dataclass
class TapscribeConfig:
    """Configuration container for indexer access and inscription defaults."""

    network: str = "mainnet"
    indexer_url_override: str | None = None
    request_timeout: float = 30.0
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retry_delay: float = DEFAULT_RETRY_DELAY
    min_fee_rate: int = DEFAULT_MIN_FEE_RATE
    padding: int = DEFAULT_PADDING
    tip: int = 0
    tipping_address: str | None = None
    job_path: Path = field(default_factory=lambda: DEFAULT_JOB_PATH)

    @property
    def indexer_url(self) -> str:
        if self.indexer_url_override:
            return self.indexer_url_override.rstrip("/")
        return DEFAULT_INDEXER_URLS[self.network]


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML object")
    return loaded


def _section(file_config: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _coerce_int(raw: Any, *, source: str) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer in {source}: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"Negative value in {source}: {raw}")
    return value


def _coerce_float(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number in {source}: {raw}") from exc
    if value < 0:
        raise ConfigurationError(f"Negative value in {source}: {raw}")
    return value


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def load_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> TapscribeConfig:
    """Load configuration from overrides, ``TAPSCRIBE_*`` variables and YAML."""

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    indexer_section = _section(file_config, "indexer", path)
    inscribe_section = _section(file_config, "inscribe", path)
    override_map = {key: value for key, value in dict(overrides or {}).items() if value is not None}

    network = _first_value(
        override_map.get("network"),
        env_map.get("TAPSCRIBE_NETWORK"),
        indexer_section.get("network"),
        "mainnet",
    )
    if network not in DEFAULT_INDEXER_URLS:
        raise ConfigurationError(
            f"Unsupported network {network!r}; expected one of {', '.join(DEFAULT_INDEXER_URLS)}"
        )

    indexer_url = _first_value(
        override_map.get("indexer_url"),
        env_map.get("TAPSCRIBE_INDEXER_URL"),
        indexer_section.get("url"),
    )
    request_timeout = _first_value(
        _coerce_float(override_map.get("request_timeout"), source="overrides"),
        _coerce_float(env_map.get("TAPSCRIBE_REQUEST_TIMEOUT"), source="environment"),
        _coerce_float(indexer_section.get("timeout"), source=f"{path} indexer.timeout"),
        30.0,
    )
    poll_interval = _first_value(
        _coerce_float(override_map.get("poll_interval"), source="overrides"),
        _coerce_float(env_map.get("TAPSCRIBE_POLL_INTERVAL"), source="environment"),
        _coerce_float(indexer_section.get("poll_interval"), source=f"{path} indexer.poll_interval"),
        DEFAULT_POLL_INTERVAL,
    )
    retry_delay = _first_value(
        _coerce_float(override_map.get("retry_delay"), source="overrides"),
        _coerce_float(env_map.get("TAPSCRIBE_RETRY_DELAY"), source="environment"),
        _coerce_float(indexer_section.get("retry_delay"), source=f"{path} indexer.retry_delay"),
        DEFAULT_RETRY_DELAY,
    )
    min_fee_rate = _first_value(
        _coerce_int(override_map.get("min_fee_rate"), source="overrides"),
        _coerce_int(env_map.get("TAPSCRIBE_MIN_FEE_RATE"), source="environment"),
        _coerce_int(inscribe_section.get("min_fee_rate"), source=f"{path} inscribe.min_fee_rate"),
        DEFAULT_MIN_FEE_RATE,
    )
    padding = _first_value(
        _coerce_int(override_map.get("padding"), source="overrides"),
        _coerce_int(env_map.get("TAPSCRIBE_PADDING"), source="environment"),
        _coerce_int(inscribe_section.get("padding"), source=f"{path} inscribe.padding"),
        DEFAULT_PADDING,
    )
    tip = _first_value(
        _coerce_int(override_map.get("tip"), source="overrides"),
        _coerce_int(env_map.get("TAPSCRIBE_TIP"), source="environment"),
        _coerce_int(inscribe_section.get("tip"), source=f"{path} inscribe.tip"),
        0,
    )
    tipping_address = _first_value(
        override_map.get("tipping_address"),
        env_map.get("TAPSCRIBE_TIPPING_ADDRESS"),
        inscribe_section.get("tipping_address"),
    )
    job_path = _first_value(
        override_map.get("job_path"),
        env_map.get("TAPSCRIBE_JOB_PATH"),
        inscribe_section.get("job_path"),
        DEFAULT_JOB_PATH,
    )

    return TapscribeConfig(
        network=network,
        indexer_url_override=indexer_url,
        request_timeout=request_timeout,
        poll_interval=poll_interval,
        retry_delay=retry_delay,
        min_fee_rate=min_fee_rate,
        padding=padding,
        tip=tip,
        tipping_address=tipping_address,
        job_path=Path(job_path).expanduser(),
    )
