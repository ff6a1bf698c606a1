"""
Configuration management and loading.

Handles application settings from YAML and API keys from environment
variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_content_guard.core.pricing import ProviderProfile, UsageLimit
from ai_content_guard.storage.db import DEFAULT_DB_PATH


class ProviderKind(Enum):
    """Backends a provider entry can be wired to."""
    OPENAI = "openai"
    GEMINI = "gemini"
    DEEPL = "deepl"
    GOOGLE = "google"

    @property
    def is_llm(self) -> bool:
        return self in (ProviderKind.OPENAI, ProviderKind.GEMINI)


@dataclass(frozen=True)
class ProviderConfig:
    """Settings, rates and limits of one provider."""
    name: str
    kind: ProviderKind
    daily_limit: float
    monthly_limit: Optional[float] = None
    request_limit: int = 0
    token_limit: int = 0
    model: Optional[str] = None
    endpoint: Optional[str] = None
    api_key_env: Optional[str] = None
    input_cost_per_1k: Decimal = Decimal("0")
    output_cost_per_1k: Decimal = Decimal("0")
    cost_per_1k_chars: Decimal = Decimal("0")
    max_retries: int = 3
    timeout: float = 30.0

    def __post_init__(self):
        """Validate provider values."""
        if self.daily_limit <= 0:
            raise ValueError(f"providers.{self.name}.daily_limit must be > 0")
        if self.monthly_limit is not None and self.monthly_limit <= 0:
            raise ValueError(f"providers.{self.name}.monthly_limit must be > 0")
        if self.kind.is_llm and not self.model:
            raise ValueError(f"providers.{self.name}.model is required for {self.kind.value}")
        if not self.kind.is_llm and not self.endpoint:
            raise ValueError(f"providers.{self.name}.endpoint is required for {self.kind.value}")
        if self.max_retries < 0:
            raise ValueError(f"providers.{self.name}.max_retries must be >= 0")
        if self.timeout <= 0:
            raise ValueError(f"providers.{self.name}.timeout must be > 0")

    def profile(self) -> ProviderProfile:
        return ProviderProfile(
            name=self.name,
            input_cost_per_1k=self.input_cost_per_1k,
            output_cost_per_1k=self.output_cost_per_1k,
            cost_per_1k_chars=self.cost_per_1k_chars,
            daily_cap=self.daily_limit,
        )

    def limit(self) -> UsageLimit:
        return UsageLimit(
            provider=self.name,
            daily_limit=self.daily_limit,
            monthly_limit=self.monthly_limit,
            request_limit=self.request_limit,
            token_limit=self.token_limit,
        )

    def api_key(self) -> Optional[str]:
        """API key from the configured environment variable, if any."""
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env) or None


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: int = 24 * 60 * 60
    max_entries: int = 1000
    cleanup_interval: int = 60 * 60

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        if self.cleanup_interval <= 0:
            raise ValueError("cleanup_interval must be > 0")


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int = 3
    job_interval: float = 1.0
    stale_after_minutes: int = 5
    failed_retention_minutes: int = 60

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("queue.max_retries must be >= 0")
        if self.job_interval < 0:
            raise ValueError("queue.job_interval must be >= 0")
        if self.stale_after_minutes <= 0:
            raise ValueError("queue.stale_after_minutes must be > 0")
        if self.failed_retention_minutes <= 0:
            raise ValueError("queue.failed_retention_minutes must be > 0")


@dataclass(frozen=True)
class SelectorConfig:
    min_samples: int = 15
    alpha: float = 0.3
    timeout: float = 30.0
    seed: Optional[int] = None

    def __post_init__(self):
        if self.min_samples < 1:
            raise ValueError("selector.min_samples must be >= 1")
        if not 0 < self.alpha <= 1:
            raise ValueError("selector.alpha must be in (0, 1]")
        if self.timeout <= 0:
            raise ValueError("selector.timeout must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    database: str
    user_id: str
    providers: Dict[str, ProviderConfig]
    cache: CacheConfig = field(default_factory=CacheConfig)
    quick_cache: CacheConfig = field(
        default_factory=lambda: CacheConfig(ttl_seconds=30 * 24 * 60 * 60, max_entries=5000)
    )
    queue: QueueConfig = field(default_factory=QueueConfig)
    selector: SelectorConfig = field(default_factory=SelectorConfig)

    def llm_providers(self) -> Dict[str, ProviderConfig]:
        return {name: p for name, p in self.providers.items() if p.kind.is_llm}

    def translation_providers(self) -> Dict[str, ProviderConfig]:
        return {name: p for name, p in self.providers.items() if not p.kind.is_llm}


def default_providers() -> Dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(
            name="openai",
            kind=ProviderKind.OPENAI,
            model="gpt-4o-mini",
            api_key_env="OPENAI_API_KEY",
            input_cost_per_1k=Decimal("0.00015"),
            output_cost_per_1k=Decimal("0.0006"),
            daily_limit=5.0,
            monthly_limit=50.0,
            request_limit=200,
            token_limit=200000,
        ),
        "gemini": ProviderConfig(
            name="gemini",
            kind=ProviderKind.GEMINI,
            model="gemini-2.5-flash-lite",
            api_key_env="GEMINI_API_KEY",
            input_cost_per_1k=Decimal("0.0001"),
            output_cost_per_1k=Decimal("0.0004"),
            daily_limit=5.0,
            monthly_limit=50.0,
            request_limit=200,
            token_limit=200000,
        ),
        "deepl": ProviderConfig(
            name="deepl",
            kind=ProviderKind.DEEPL,
            endpoint="https://api-free.deepl.com/v2/translate",
            api_key_env="DEEPL_API_KEY",
            cost_per_1k_chars=Decimal("0.02"),
            daily_limit=2.0,
            monthly_limit=20.0,
            request_limit=500,
        ),
        "google": ProviderConfig(
            name="google",
            kind=ProviderKind.GOOGLE,
            endpoint="https://translation.googleapis.com/language/translate/v2",
            api_key_env="GOOGLE_TRANSLATE_API_KEY",
            cost_per_1k_chars=Decimal("0.02"),
            daily_limit=2.0,
            monthly_limit=20.0,
            request_limit=500,
        ),
    }


def default_config(database: str = DEFAULT_DB_PATH) -> AppConfig:
    """Configuration used when no file is given."""
    return AppConfig(database=database, user_id="local", providers=default_providers())


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could lead to
    unexpected spend.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {"database", "user_id", "providers", "cache", "quick_cache", "queue", "selector"}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if "providers" not in raw_config:
        raise ValueError("Missing required 'providers' section")
    providers_data = raw_config["providers"]
    if not isinstance(providers_data, dict) or not providers_data:
        raise ValueError("'providers' must be a non-empty dictionary")

    providers = {}
    for name, data in providers_data.items():
        if not isinstance(data, dict):
            raise ValueError(f"Provider '{name}' must be a dictionary")
        providers[name] = _parse_provider(str(name), data)

    user_id = raw_config.get("user_id", "local")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("'user_id' must be a non-empty string")

    database = raw_config.get("database", DEFAULT_DB_PATH)
    if not isinstance(database, str) or not database.strip():
        raise ValueError("'database' must be a non-empty string")

    defaults = AppConfig(database=database, user_id=user_id, providers=providers)
    return AppConfig(
        database=database,
        user_id=user_id,
        providers=providers,
        cache=_parse_section(raw_config, "cache", CacheConfig, defaults.cache),
        quick_cache=_parse_section(raw_config, "quick_cache", CacheConfig, defaults.quick_cache),
        queue=_parse_section(raw_config, "queue", QueueConfig, defaults.queue),
        selector=_parse_section(raw_config, "selector", SelectorConfig, defaults.selector),
    )


_PROVIDER_KEYS = {
    "kind",
    "model",
    "endpoint",
    "api_key_env",
    "rates",
    "limits",
    "max_retries",
    "timeout",
}
_RATE_KEYS = {"input_per_1k", "output_per_1k", "per_1k_chars"}
_LIMIT_KEYS = {"daily", "monthly", "requests", "tokens"}


def _parse_provider(name: str, data: Dict[str, Any]) -> ProviderConfig:
    """Parse and validate one provider entry.

    Args:
        name: Provider name
        data: Provider configuration data

    Returns:
        Validated ProviderConfig

    Raises:
        ValueError: If configuration is invalid
    """
    path = f"providers.{name}"
    unknown_keys = set(data.keys()) - _PROVIDER_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if "kind" not in data:
        raise ValueError(f"Missing required 'kind' in {path}")
    kind_str = data["kind"]
    if not isinstance(kind_str, str):
        raise ValueError(f"'kind' in {path} must be a string")
    try:
        kind = ProviderKind(kind_str.lower())
    except ValueError:
        valid_kinds = [kind.value for kind in ProviderKind]
        raise ValueError(f"'kind' in {path} must be one of: {valid_kinds}")

    rates = data.get("rates", {})
    if not isinstance(rates, dict):
        raise ValueError(f"'rates' in {path} must be a dictionary")
    unknown_rates = set(rates.keys()) - _RATE_KEYS
    if unknown_rates:
        raise ValueError(f"Unknown rate keys in {path}: {unknown_rates}")

    limits = data.get("limits")
    if not isinstance(limits, dict):
        raise ValueError(f"Missing required 'limits' dictionary in {path}")
    unknown_limits = set(limits.keys()) - _LIMIT_KEYS
    if unknown_limits:
        raise ValueError(f"Unknown limit keys in {path}: {unknown_limits}")
    if "daily" not in limits:
        raise ValueError(f"Missing required 'limits.daily' in {path}")

    monthly = limits.get("monthly")
    return ProviderConfig(
        name=name,
        kind=kind,
        model=data.get("model"),
        endpoint=data.get("endpoint"),
        api_key_env=data.get("api_key_env"),
        input_cost_per_1k=_decimal(rates.get("input_per_1k", 0), f"{path}.rates.input_per_1k"),
        output_cost_per_1k=_decimal(rates.get("output_per_1k", 0), f"{path}.rates.output_per_1k"),
        cost_per_1k_chars=_decimal(rates.get("per_1k_chars", 0), f"{path}.rates.per_1k_chars"),
        daily_limit=_number(limits["daily"], f"{path}.limits.daily"),
        monthly_limit=_number(monthly, f"{path}.limits.monthly") if monthly is not None else None,
        request_limit=int(_number(limits.get("requests", 0), f"{path}.limits.requests")),
        token_limit=int(_number(limits.get("tokens", 0), f"{path}.limits.tokens")),
        max_retries=int(_number(data.get("max_retries", 3), f"{path}.max_retries")),
        timeout=_number(data.get("timeout", 30.0), f"{path}.timeout"),
    )


def _parse_section(raw_config: Dict[str, Any], key: str, cls, default):
    if key not in raw_config:
        return default
    data = raw_config[key]
    if not isinstance(data, dict):
        raise ValueError(f"'{key}' must be a dictionary")
    allowed = set(cls.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {key}: {unknown_keys}")
    values = {name: getattr(default, name) for name in allowed}
    values.update(data)
    return cls(**values)


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if result < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return result
