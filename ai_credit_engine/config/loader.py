"""
Configuration management and loading.

Reads the engine's YAML configuration with strict validation. Every section
is optional; omitted sections fall back to the defaults below.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_credit_engine.core.pricing import ModelPricing, PricingCatalog, default_catalog

DEFAULT_DB_PATH = "ai_credit_engine.db"

DEFAULT_FEATURES = (
    "content_generation",
    "image_generation",
    "brand_audit",
    "campaign_planning",
    "call_insights",
    "chat",
)


@dataclass(frozen=True)
class DatabaseConfig:
    """Where the ledger database lives."""
    path: str = DEFAULT_DB_PATH
    busy_timeout_ms: int = 5000

    def __post_init__(self):
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms cannot be negative")


@dataclass(frozen=True)
class CreditPolicyConfig:
    """How usage turns into credits and when members are warned."""
    markup: Decimal = Decimal("2.0")
    usd_exchange_rate: Decimal = Decimal("1.0")  # billing-currency units per USD
    low_balance_threshold: Decimal = Decimal("0.20")  # fraction of allocation

    def __post_init__(self):
        """Validate policy values."""
        if self.markup <= 0:
            raise ValueError("markup must be > 0")
        if self.usd_exchange_rate <= 0:
            raise ValueError("usd_exchange_rate must be > 0")
        if not (0 < self.low_balance_threshold < 1):
            raise ValueError("low_balance_threshold_pct must be between 0 and 100 (exclusive)")


@dataclass(frozen=True)
class RetryConfig:
    """Bounded backoff for optimistic-concurrency conflicts."""
    max_attempts: int = 5
    min_wait_seconds: float = 0.01
    max_wait_seconds: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.min_wait_seconds < 0:
            raise ValueError("min_wait_seconds cannot be negative")
        if self.max_wait_seconds < self.min_wait_seconds:
            raise ValueError("max_wait_seconds must be >= min_wait_seconds")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    credits: CreditPolicyConfig = field(default_factory=CreditPolicyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    features: Tuple[str, ...] = DEFAULT_FEATURES
    pricing: Tuple[ModelPricing, ...] = ()

    def is_known_feature(self, feature: str) -> bool:
        """An empty feature list accepts any feature name."""
        return not self.features or feature in self.features

    def build_catalog(self) -> PricingCatalog:
        """Built-in catalog with configured entries layered on top."""
        catalog = default_catalog()
        for entry in self.pricing:
            catalog.add(entry)
        return catalog


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to mispriced usage or misrouted credits.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'database', 'credits', 'retry', 'features', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = DatabaseConfig(**_section(raw_config, 'database', {'path', 'busy_timeout_ms'}))

    credits_data = _section(raw_config, 'credits', {'markup', 'usd_exchange_rate', 'low_balance_threshold_pct'})
    credits_kwargs: Dict[str, Any] = {}
    if 'markup' in credits_data:
        credits_kwargs['markup'] = _decimal(credits_data['markup'], 'credits.markup')
    if 'usd_exchange_rate' in credits_data:
        credits_kwargs['usd_exchange_rate'] = _decimal(credits_data['usd_exchange_rate'], 'credits.usd_exchange_rate')
    if 'low_balance_threshold_pct' in credits_data:
        pct = _decimal(credits_data['low_balance_threshold_pct'], 'credits.low_balance_threshold_pct')
        credits_kwargs['low_balance_threshold'] = pct / Decimal("100")
    credits = CreditPolicyConfig(**credits_kwargs)

    retry_data = _section(raw_config, 'retry', {'max_attempts', 'min_wait_seconds', 'max_wait_seconds'})
    if 'max_attempts' in retry_data and not isinstance(retry_data['max_attempts'], int):
        raise ValueError("'retry.max_attempts' must be an integer")
    retry = RetryConfig(**{k: v for k, v in retry_data.items()})

    features = DEFAULT_FEATURES
    if 'features' in raw_config:
        features_data = raw_config['features']
        if not isinstance(features_data, list):
            raise ValueError("'features' must be a list")
        for feature in features_data:
            if not isinstance(feature, str) or not feature.strip():
                raise ValueError(f"Invalid feature name: {feature!r}")
        features = tuple(features_data)

    pricing_data = raw_config.get('pricing', [])
    if not isinstance(pricing_data, list):
        raise ValueError("'pricing' must be a list")
    pricing = tuple(
        _parse_pricing_entry(item, f"pricing[{i}]") for i, item in enumerate(pricing_data)
    )

    return EngineConfig(
        database=database,
        credits=credits,
        retry=retry,
        features=features,
        pricing=pricing
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return an optional dictionary section, rejecting unknown keys."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _parse_effective_from(value: Any, path: str) -> datetime:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value)
        except ValueError:
            raise ValueError(f"'{path}.effective_from' must be an ISO date")
    else:
        raise ValueError(f"'{path}.effective_from' must be an ISO date")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _parse_pricing_entry(data: Any, path: str) -> ModelPricing:
    """Parse and validate a pricing entry.

    Args:
        data: Pricing entry data
        path: Path for error messages

    Returns:
        Validated ModelPricing

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {
        'model', 'provider', 'input_price_per_1m', 'output_price_per_1m',
        'is_free', 'display_name', 'effective_from'
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('model', 'provider', 'input_price_per_1m', 'output_price_per_1m'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    is_free = data.get('is_free', False)
    if not isinstance(is_free, bool):
        raise ValueError(f"'is_free' in {path} must be a boolean")

    kwargs: Dict[str, Any] = {}
    if 'effective_from' in data:
        kwargs['effective_from'] = _parse_effective_from(data['effective_from'], path)

    return ModelPricing(
        model_id=str(data['model']),
        provider=str(data['provider']),
        input_price_per_1m=_decimal(data['input_price_per_1m'], f"{path}.input_price_per_1m"),
        output_price_per_1m=_decimal(data['output_price_per_1m'], f"{path}.output_price_per_1m"),
        is_free=is_free,
        display_name=data.get('display_name'),
        **kwargs
    )


def load_config_or_default(path: Optional[str]) -> EngineConfig:
    """Load a config file when given, otherwise return defaults."""
    if path is None:
        return EngineConfig()
    return load_engine_config(path)
