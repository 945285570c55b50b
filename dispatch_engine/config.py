"""
Dispatch Engine Configuration Module

Central configuration management with environment variable support.
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Optional, Dict, Any
from enum import Enum

from .models import ScoringWeights, LoadBalancingConfig, DispatchConfig


class Environment(Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class RedisConfig:
    """Redis connection configuration."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    ssl: bool = False

    # Pool settings
    max_connections: int = 100
    socket_timeout: float = 5.0

    # Namespace for every key the store writes
    key_prefix: str = "dispatch"

    @property
    def url(self) -> str:
        """Build Redis URL."""
        protocol = "rediss" if self.ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"

    @classmethod
    def from_env(cls) -> "RedisConfig":
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            ssl=_env_bool("REDIS_SSL", "false"),
            max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "100")),
            socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
            key_prefix=os.getenv("DISPATCH_REDIS_KEY_PREFIX", "dispatch"),
        )


@dataclass
class ScoringSettings:
    """Weight table for the scoring engine."""
    distance: float = 0.25
    driver_rating: float = 0.15
    acceptance_rate: float = 0.15
    vehicle_match: float = 0.10
    availability: float = 0.10
    efficiency: float = 0.10
    passenger_preference: float = 0.05
    traffic_conditions: float = 0.05
    surge: float = 0.03
    loyalty: float = 0.02

    def to_weights(self) -> ScoringWeights:
        return ScoringWeights(
            distance=self.distance,
            driver_rating=self.driver_rating,
            acceptance_rate=self.acceptance_rate,
            vehicle_match=self.vehicle_match,
            availability=self.availability,
            efficiency=self.efficiency,
            passenger_preference=self.passenger_preference,
            traffic_conditions=self.traffic_conditions,
            surge=self.surge,
            loyalty=self.loyalty,
        )

    @classmethod
    def from_env(cls) -> "ScoringSettings":
        """Load configuration from environment variables."""
        return cls(
            distance=float(os.getenv("DISPATCH_WEIGHT_DISTANCE", "0.25")),
            driver_rating=float(os.getenv("DISPATCH_WEIGHT_DRIVER_RATING", "0.15")),
            acceptance_rate=float(os.getenv("DISPATCH_WEIGHT_ACCEPTANCE_RATE", "0.15")),
            vehicle_match=float(os.getenv("DISPATCH_WEIGHT_VEHICLE_MATCH", "0.10")),
            availability=float(os.getenv("DISPATCH_WEIGHT_AVAILABILITY", "0.10")),
            efficiency=float(os.getenv("DISPATCH_WEIGHT_EFFICIENCY", "0.10")),
            passenger_preference=float(os.getenv("DISPATCH_WEIGHT_PASSENGER_PREFERENCE", "0.05")),
            traffic_conditions=float(os.getenv("DISPATCH_WEIGHT_TRAFFIC_CONDITIONS", "0.05")),
            surge=float(os.getenv("DISPATCH_WEIGHT_SURGE", "0.03")),
            loyalty=float(os.getenv("DISPATCH_WEIGHT_LOYALTY", "0.02")),
        )


@dataclass
class LoadBalancingSettings:
    """Fleet load-balancing thresholds."""
    max_rides_per_driver: int = 3
    optimal_utilization_rate: float = 0.75
    overload_penalty: float = 0.5
    high_utilization_penalty: float = 0.2

    def to_model(self) -> LoadBalancingConfig:
        return LoadBalancingConfig(
            max_rides_per_driver=self.max_rides_per_driver,
            optimal_utilization_rate=self.optimal_utilization_rate,
            overload_penalty=self.overload_penalty,
            high_utilization_penalty=self.high_utilization_penalty,
        )

    @classmethod
    def from_env(cls) -> "LoadBalancingSettings":
        """Load configuration from environment variables."""
        return cls(
            max_rides_per_driver=int(os.getenv("DISPATCH_MAX_RIDES_PER_DRIVER", "3")),
            optimal_utilization_rate=float(os.getenv("DISPATCH_OPTIMAL_UTILIZATION", "0.75")),
            overload_penalty=float(os.getenv("DISPATCH_OVERLOAD_PENALTY", "0.5")),
            high_utilization_penalty=float(os.getenv("DISPATCH_HIGH_UTILIZATION_PENALTY", "0.2")),
        )


@dataclass
class DispatchSettings:
    """Core dispatch pipeline configuration."""
    average_speed_kmh: float = 30.0
    distance_horizon_km: float = 10.0
    max_claim_retries: int = 3
    driver_pool_limit: int = 50
    lookup_timeout_seconds: float = 2.0

    # Overnight working-hours windows are not honoured unless enabled
    allow_overnight_shifts: bool = False

    def to_model(self) -> DispatchConfig:
        return DispatchConfig(
            average_speed_kmh=self.average_speed_kmh,
            distance_horizon_km=self.distance_horizon_km,
            max_claim_retries=self.max_claim_retries,
            driver_pool_limit=self.driver_pool_limit,
            lookup_timeout_seconds=self.lookup_timeout_seconds,
            allow_overnight_shifts=self.allow_overnight_shifts,
        )

    @classmethod
    def from_env(cls) -> "DispatchSettings":
        """Load configuration from environment variables."""
        return cls(
            average_speed_kmh=float(os.getenv("DISPATCH_AVERAGE_SPEED_KMH", "30")),
            distance_horizon_km=float(os.getenv("DISPATCH_DISTANCE_HORIZON_KM", "10")),
            max_claim_retries=int(os.getenv("DISPATCH_MAX_CLAIM_RETRIES", "3")),
            driver_pool_limit=int(os.getenv("DISPATCH_DRIVER_POOL_LIMIT", "50")),
            lookup_timeout_seconds=float(os.getenv("DISPATCH_LOOKUP_TIMEOUT_SECONDS", "2.0")),
            allow_overnight_shifts=_env_bool("DISPATCH_ALLOW_OVERNIGHT_SHIFTS", "false"),
        )


@dataclass
class OracleSettings:
    """External lookup services (traffic, passenger affinity, surge)."""
    traffic_api_url: Optional[str] = None
    affinity_api_url: Optional[str] = None
    surge_api_url: Optional[str] = None
    api_key: str = ""

    timeout_seconds: float = 2.0
    surge_cache_ttl_seconds: int = 60
    surge_cache_max_entries: int = 10_000

    @classmethod
    def from_env(cls) -> "OracleSettings":
        """Load configuration from environment variables."""
        return cls(
            traffic_api_url=os.getenv("TRAFFIC_API_URL"),
            affinity_api_url=os.getenv("AFFINITY_API_URL"),
            surge_api_url=os.getenv("SURGE_API_URL"),
            api_key=os.getenv("ORACLE_API_KEY", ""),
            timeout_seconds=float(os.getenv("ORACLE_TIMEOUT_SECONDS", "2.0")),
            surge_cache_ttl_seconds=int(os.getenv("SURGE_CACHE_TTL_SECONDS", "60")),
            surge_cache_max_entries=int(os.getenv("SURGE_CACHE_MAX_ENTRIES", "10000")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Log destinations
    console: bool = True
    file_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Load configuration from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format=os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            console=_env_bool("LOG_CONSOLE", "true"),
            file_path=os.getenv("LOG_FILE_PATH"),
        )


@dataclass
class DispatchEngineConfig:
    """Master configuration for the dispatch engine."""
    environment: Environment = Environment.DEVELOPMENT

    # Sub-configurations
    redis: RedisConfig = field(default_factory=RedisConfig)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    load_balancing: LoadBalancingSettings = field(default_factory=LoadBalancingSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    oracles: OracleSettings = field(default_factory=OracleSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "DispatchEngineConfig":
        """Load all configuration from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            redis=RedisConfig.from_env(),
            scoring=ScoringSettings.from_env(),
            load_balancing=LoadBalancingSettings.from_env(),
            dispatch=DispatchSettings.from_env(),
            oracles=OracleSettings.from_env(),
            logging=LoggingConfig.from_env(),
        )

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration and return any warnings/errors.

        Returns:
            Dictionary with 'valid' boolean and 'messages' list
        """
        messages = []
        valid = True

        weights = asdict(self.scoring)
        negative = sorted(name for name, value in weights.items() if value < 0)
        if negative:
            messages.append(f"ERROR: Scoring weights must not be negative: {', '.join(negative)}")
            valid = False

        # Weights are designed to sum to 1.0; the score is clamped either way
        weight_total = sum(weights.values())
        if abs(weight_total - 1.0) > 0.01:
            messages.append(f"WARNING: Scoring weights sum to {weight_total:.3f}, expected 1.0")

        if self.dispatch.average_speed_kmh <= 0:
            messages.append("ERROR: Average speed must be positive")
            valid = False

        if self.dispatch.lookup_timeout_seconds <= 0 or self.oracles.timeout_seconds <= 0:
            messages.append("ERROR: Lookup timeouts must be positive")
            valid = False

        if self.load_balancing.max_rides_per_driver < 1:
            messages.append("ERROR: max_rides_per_driver must be at least 1")
            valid = False

        if self.dispatch.allow_overnight_shifts:
            messages.append("WARNING: Overnight working-hours windows are enabled")

        # Check Redis
        if not self.redis.host:
            messages.append("WARNING: Redis host not configured")
        if self.environment == Environment.PRODUCTION and self.redis.host == "localhost":
            messages.append("WARNING: Using localhost Redis in production")

        return {"valid": valid, "messages": messages}


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install handlers on the package logger according to ``config``."""
    config = config or get_config().logging
    package_logger = logging.getLogger("dispatch_engine")
    package_logger.setLevel(config.level.upper())

    formatter = logging.Formatter(config.format)
    handlers = []
    if config.console:
        handlers.append(logging.StreamHandler())
    if config.file_path:
        handlers.append(logging.FileHandler(config.file_path))

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


# Global configuration instance
_config: Optional[DispatchEngineConfig] = None


def get_config() -> DispatchEngineConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = DispatchEngineConfig.from_env()
    return _config


def set_config(config: DispatchEngineConfig) -> None:
    """Set the global configuration instance (for testing)."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
