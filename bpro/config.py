"""
bitcoin-pro Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (BPRO_*)
    2. Runtime overrides
    3. User config file (~/.bpro/config.yaml)
    4. Project config file (./bpro.yaml)
    5. Default values

Confirmation depth and reorg policy are product decisions owned by the chain
collaborator; the engine only reads ``seals.min_confirmations`` to decide when
a proposed closure becomes final.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore


@dataclass
class SealConfig:
    """Configuration for the seal registry."""
    min_confirmations: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="BPRO_SEAL_MIN_CONFIRMATIONS",
        description="Witness depth at which a proposed seal closure becomes confirmed",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))


@dataclass
class SelectorConfig:
    """Configuration for the UTXO/seal selector."""
    exact_search_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=16,
        env_var="BPRO_SELECTOR_EXACT_LIMIT",
        description="Largest candidate set searched exhaustively before falling back to greedy",
        validator=lambda x: isinstance(x, int) and 1 <= x <= 24,
    ))


@dataclass
class CommitmentConfig:
    """Configuration for commitment embedding."""
    default_method: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="tapret",
        env_var="BPRO_COMMITMENT_METHOD",
        description="Embedding used for new seals and commitments (opret|tapret)",
        validator=lambda x: x in ("opret", "tapret"),
    ))


@dataclass
class EngineConfig:
    """Configuration for the asset engine and CLI."""
    default_change_vout: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="BPRO_ENGINE_CHANGE_VOUT",
        description="Witness output index used for deferred change seals",
        validator=lambda x: isinstance(x, int) and 0 <= x <= 0xFFFFFFFF,
    ))
    state_file: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="bpro-state.json",
        env_var="BPRO_STATE_FILE",
        description="Path of the CLI state file",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging and audit."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="BPRO_LOG_LEVEL",
        description="Minimum log level",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    structured: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="BPRO_LOG_STRUCTURED",
        description="Emit JSON log lines instead of plain text",
    ))
    audit_enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="BPRO_AUDIT_ENABLED",
        description="Record hash-chained audit events for engine mutations",
    ))
    audit_retention: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000,
        env_var="BPRO_AUDIT_RETENTION",
        description="Audit events kept in memory; the oldest are dropped first",
        validator=lambda x: x >= 1,
    ))


@dataclass
class BproConfig:
    """
    Root configuration.

    Aggregates all component configurations.
    """
    seals: SealConfig = field(default_factory=SealConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)
    commitment: CommitmentConfig = field(default_factory=CommitmentConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = BproConfig()
        self._initialized = True

    @property
    def config(self) -> BproConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            self._apply_dict(data)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("bpro.yaml"),
            Path.home() / ".bpro" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("seals.min_confirmations", 6)
        """
        parts = path.split(".")
        obj = self._config

        for part in parts[:-1]:
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("selector.exact_search_limit")
        """
        parts = path.split(".")
        obj = self._config

        for part in parts:
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def reset(self) -> None:
        """Drop runtime overrides and loaded files, returning to defaults."""
        self._config = BproConfig()

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ValueError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> BproConfig:
    """Get the current configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
