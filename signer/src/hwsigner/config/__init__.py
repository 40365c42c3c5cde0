"""Configuration loader for hwsigner.

Loads settings from a YAML file with built-in defaults. Supports environment
variable overrides using the HWSIGNER_ prefix with double-underscore
nesting (e.g., HWSIGNER_SIGNING__TIMEOUT_SECONDS=45).
"""

from __future__ import annotations

import os
import pathlib
import typing
from typing import Any

import yaml
from pydantic import BaseModel, Field

from hwsigner.models import ConnectionMethod, DeviceVendor


# ---------------------------------------------------------------------------
# Config sub-models
# ---------------------------------------------------------------------------

class SignerConfig(BaseModel):
    name: str = "hwsigner"


class TransportConfig(BaseModel):
    # Bluetooth pairing is opt-in.
    methods: list[ConnectionMethod] = Field(
        default_factory=lambda: [ConnectionMethod.USB, ConnectionMethod.WIFI]
    )
    simulate: bool = False
    plugin_dir: str | None = None


class ConnectionConfig(BaseModel):
    connect_timeout: float = 30.0


def _default_derivation_paths() -> dict[str, str]:
    return {
        "ethereum": "m/44'/60'/0'/0",
        "ledger_live": "m/44'/60'/0'",
        "ethereum_alt": "m/44'/60'/1'/0",
        "bitcoin_legacy": "m/44'/0'/0'/0",
        "bitcoin_segwit_p2sh": "m/49'/0'/0'/0",
        "bitcoin_native_segwit": "m/84'/0'/0'/0",
    }


class AccountsConfig(BaseModel):
    default_count: int = 5
    max_page_size: int = 20
    derivation_paths: dict[str, str] = Field(default_factory=_default_derivation_paths)


class SigningConfig(BaseModel):
    timeout_seconds: float = 30.0
    # GridPlus confirms on a paired Lattice screen, which is noticeably slower.
    vendor_timeouts: dict[DeviceVendor, float] = Field(
        default_factory=lambda: {DeviceVendor.GRIDPLUS: 60.0}
    )
    history_keep: int = 200

    def timeout_for(self, vendor: DeviceVendor) -> float:
        return self.vendor_timeouts.get(vendor, self.timeout_seconds)


class EventsConfig(BaseModel):
    subscriber_queue_size: int = 100
    journal_path: str = ":memory:"


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseModel):
    signer: SignerConfig = Field(default_factory=SignerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    accounts: AccountsConfig = Field(default_factory=AccountsConfig)
    signing: SigningConfig = Field(default_factory=SigningConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


# ---------------------------------------------------------------------------
# Deep merge helper
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

_ENV_PREFIX = "HWSIGNER_"


def _coerce(value: str) -> Any:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _field_annotation(parts: list[str]) -> Any:
    """Return the annotation of the Settings field at *parts*, or ``None``."""
    model: Any = Settings
    for part in parts[:-1]:
        field = model.model_fields.get(part)
        if field is None or not (
            isinstance(field.annotation, type) and issubclass(field.annotation, BaseModel)
        ):
            return None
        model = field.annotation
    field = model.model_fields.get(parts[-1])
    return field.annotation if field is not None else None


def _coerce_for(parts: list[str], value: str) -> Any:
    """Coerce *value* for the field it overrides.

    List fields always split on commas (a single item becomes a one-element
    list). String and optional-string fields keep the raw text. Anything
    else, including keys that name no field, goes through ``_coerce``.
    """
    annotation = _field_annotation(parts)
    if typing.get_origin(annotation) is list:
        return [part.strip() for part in value.split(",") if part.strip()]
    args = typing.get_args(annotation)
    if annotation is str or (str in args and type(None) in args):
        return value
    return _coerce(value)


def _collect_env_overrides() -> dict[str, Any]:
    """Collect HWSIGNER_* env vars and build a nested dict.

    Double-underscore separates nesting levels; values are coerced to the
    type of the field they override.
    Example: HWSIGNER_TRANSPORT__METHODS=usb,bluetooth
    becomes  {"transport": {"methods": ["usb", "bluetooth"]}}
    """
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        parts = key[len(_ENV_PREFIX) :].lower().split("__")
        current = overrides
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = _coerce_for(parts, value)
    return overrides


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_BUILTIN_DEFAULTS_PATH = pathlib.Path(__file__).resolve().parents[3] / "config" / "defaults.yaml"


def load_settings(
    config_path: pathlib.Path | None = None,
) -> Settings:
    """Load settings with layered precedence: defaults < file < env vars.

    Parameters
    ----------
    config_path:
        Path to a YAML config file. If ``None`` the bundled defaults file is
        used; if the file does not exist, model defaults apply.
    """
    base: dict[str, Any] = {}

    path = config_path if config_path is not None else _BUILTIN_DEFAULTS_PATH
    if path.exists():
        with open(path) as fh:
            file_data = yaml.safe_load(fh)
        if isinstance(file_data, dict):
            base = _deep_merge(base, file_data)

    env_overrides = _collect_env_overrides()
    if env_overrides:
        base = _deep_merge(base, env_overrides)

    return Settings(**base)
