"""Configuration loading and validation for YAML-based ledgerctl settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from ledgerctl.core.errors import ConfigError

TOKEN_ENV = "LEDGERCTL_AUTHORITY_TOKEN"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class DeviceConfig:
    vendor_id: int
    timeout_s: float
    confirm_timeout_s: float


@dataclass(frozen=True)
class AuthorityConfig:
    base_url: str
    timeout_s: float
    max_attempts: int
    backoff_initial_s: float
    backoff_max_s: float
    token: str | None = None


@dataclass(frozen=True)
class NetworkConfig:
    app: str
    base_url: str | None = None


@dataclass(frozen=True)
class LedgerctlConfig:
    device: DeviceConfig
    authority: AuthorityConfig
    networks: dict[str, NetworkConfig]
    warnings: tuple[str, ...] = ()

    def network(self, testnet: bool) -> NetworkConfig:
        return self.networks["testnet" if testnet else "mainnet"]

    def authority_for(self, testnet: bool) -> AuthorityConfig:
        network = self.network(testnet)
        if network.base_url is None:
            return self.authority
        return AuthorityConfig(
            base_url=network.base_url,
            timeout_s=self.authority.timeout_s,
            max_attempts=self.authority.max_attempts,
            backoff_initial_s=self.authority.backoff_initial_s,
            backoff_max_s=self.authority.backoff_max_s,
            token=self.authority.token,
        )


@lru_cache(maxsize=None)
def load_schema_validator(name: str) -> Any:
    schema_text = resources.files("ledgerctl.schemas").joinpath(f"{name}.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "ledgerctl/config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_config(doc: dict[str, Any], source: str, warnings: list[str]) -> LedgerctlConfig:
    validator = load_schema_validator("config")
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    authority = doc["authority"]
    token = os.environ.get(TOKEN_ENV) or authority.get("token")
    if not authority["base_url"].startswith("https://"):
        warning = f"Authority URL {authority['base_url']} is not using HTTPS"
        LOGGER.warning(warning)
        warnings.append(warning)

    return LedgerctlConfig(
        device=DeviceConfig(
            vendor_id=int(doc["device"]["vendor_id"]),
            timeout_s=float(doc["device"]["timeout_s"]),
            confirm_timeout_s=float(doc["device"]["confirm_timeout_s"]),
        ),
        authority=AuthorityConfig(
            base_url=authority["base_url"].rstrip("/"),
            timeout_s=float(authority["timeout_s"]),
            max_attempts=int(authority["max_attempts"]),
            backoff_initial_s=float(authority["backoff_initial_s"]),
            backoff_max_s=float(authority["backoff_max_s"]),
            token=token,
        ),
        networks={
            name: NetworkConfig(
                app=network["app"],
                base_url=network["base_url"].rstrip("/") if "base_url" in network else None,
            )
            for name, network in doc["networks"].items()
        },
        warnings=tuple(warnings),
    )


def load_config() -> LedgerctlConfig:
    defaults_path = resources.files("ledgerctl.data").joinpath("defaults.yaml")
    doc = _read_yaml(defaults_path)
    source = "packaged defaults"
    warnings: list[str] = []

    user_path = _config_path()
    if user_path.is_file():
        doc = _merge(doc, _read_yaml(user_path))
        source = str(user_path)
        LOGGER.info("Loaded user configuration from %s", user_path)

    return _build_config(doc, source, warnings)
