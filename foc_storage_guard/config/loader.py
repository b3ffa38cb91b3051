"""
Configuration management and loading.

Settings come from an optional YAML file, then environment variables, which
take precedence. Validation is strict: unknown keys and out-of-range values
fail at startup instead of at payment time.
"""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

SUPPORTED_NETWORKS = ("mainnet", "calibration")

# Storage providers treat accounts with less runway than this as insolvent
MIN_PERIOD_DAYS = 30

# YAML section -> {key: Settings field}
YAML_SECTIONS = {
    "network": {
        "name": "network",
        "rpc_url": "rpc_url",
    },
    "contracts": {
        "warm_storage": "warm_storage_address",
        "payments": "payments_address",
        "storage_view": "storage_view_address",
        "pdp_verifier": "pdp_verifier_address",
        "provider_registry": "provider_registry_address",
    },
    "storage": {
        "total_storage_needed_gib": "total_storage_needed_gib",
        "persistence_period_days": "persistence_period_days",
        "runout_notification_threshold_days": "runout_notification_threshold_days",
    },
    "client": {
        "read_retries": "read_retries",
        "file_store": "file_store",
    },
}

# Environment variable -> Settings field
ENV_VARS = {
    "PRIVATE_KEY": "private_key",
    "FILECOIN_NETWORK": "network",
    "FILECOIN_RPC_URL": "rpc_url",
    "WARM_STORAGE_ADDRESS": "warm_storage_address",
    "PAYMENTS_ADDRESS": "payments_address",
    "STORAGE_VIEW_ADDRESS": "storage_view_address",
    "PDP_VERIFIER_ADDRESS": "pdp_verifier_address",
    "PROVIDER_REGISTRY_ADDRESS": "provider_registry_address",
    "TOTAL_STORAGE_NEEDED_GiB": "total_storage_needed_gib",
    "PERSISTENCE_PERIOD_DAYS": "persistence_period_days",
    "RUNOUT_NOTIFICATION_THRESHOLD_DAYS": "runout_notification_threshold_days",
    "READ_RETRIES": "read_retries",
    "FILE_STORE": "file_store",
}

_INT_FIELDS = {
    "total_storage_needed_gib",
    "persistence_period_days",
    "runout_notification_threshold_days",
    "read_retries",
}


@dataclass(frozen=True)
class Settings:
    """Validated application settings."""
    private_key: Optional[str] = None
    network: str = "calibration"
    rpc_url: Optional[str] = None
    warm_storage_address: Optional[str] = None
    payments_address: Optional[str] = None
    # Only needed for dataset and provider queries
    storage_view_address: Optional[str] = None
    pdp_verifier_address: Optional[str] = None
    provider_registry_address: Optional[str] = None
    total_storage_needed_gib: int = 150
    persistence_period_days: int = 365
    runout_notification_threshold_days: int = 45
    read_retries: int = 2
    file_store: Optional[str] = None  # "package.module:factory"

    def __post_init__(self):
        """Validate setting values."""
        if self.network not in SUPPORTED_NETWORKS:
            raise ValueError(f"network must be one of: {list(SUPPORTED_NETWORKS)}")
        if self.total_storage_needed_gib <= 0:
            raise ValueError("total_storage_needed_gib must be > 0")
        if self.persistence_period_days < MIN_PERIOD_DAYS:
            raise ValueError(f"persistence_period_days must be greater than or equal to {MIN_PERIOD_DAYS}")
        if self.runout_notification_threshold_days < MIN_PERIOD_DAYS:
            raise ValueError(
                f"runout_notification_threshold_days must be greater than or equal to {MIN_PERIOD_DAYS}"
            )
        if self.read_retries < 0:
            raise ValueError("read_retries must be >= 0")
        if self.file_store is not None and ":" not in self.file_store:
            raise ValueError("file_store must be an import path of the form 'module:factory'")

    @property
    def total_storage_needed_bytes(self) -> int:
        return self.total_storage_needed_gib * 1024 ** 3

    def require_signer(self) -> None:
        """Ensure the settings needed to sign transactions are present.

        Raises:
            ValueError: If the private key or a contract address is missing
        """
        missing = [name for name in ("private_key", "warm_storage_address", "payments_address")
                   if not getattr(self, name)]
        if missing:
            env_names = [env for env, name in ENV_VARS.items() if name in missing]
            raise ValueError(f"Missing required settings: {', '.join(env_names)}")


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings from YAML and the environment.

    Args:
        path: Optional path to a YAML settings file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If path is given but doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    values: Dict[str, Any] = {}
    if path is not None:
        values.update(_load_yaml(path))

    env = os.environ if environ is None else environ
    for env_name, field_name in ENV_VARS.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    return replace(Settings(), **{name: _coerce(name, value) for name, value in values.items()})


def _load_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in settings file {path}: {e}")

    if not raw_config:
        raise ValueError("Settings file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Settings file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(YAML_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    values = {}
    for section, keys in YAML_SECTIONS.items():
        data = raw_config.get(section)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{section}' must be a dictionary")
        unknown = set(data.keys()) - set(keys)
        if unknown:
            raise ValueError(f"Unknown keys in {section}: {unknown}")
        for key, field_name in keys.items():
            if key in data and data[key] is not None:
                values[field_name] = data[key]
    return values


def _coerce(name: str, value: Any) -> Any:
    if name not in {f.name for f in fields(Settings)}:
        raise ValueError(f"Unknown setting: {name}")
    if name in _INT_FIELDS:
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValueError(f"'{name}' must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"'{name}' must be an integer, got {value!r}")
    if not isinstance(value, str):
        raise ValueError(f"'{name}' must be a string")
    return value
