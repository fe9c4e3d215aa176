"""
Quest Engine - Typed Settings

Validated views over the merged config. Each section is a frozen
dataclass with the engine's defaults; from_config() reads the loader
and rejects values that would break an invariant (e.g. a monitor
interval below 500 ms).

Usage:
    from engine.config_loader import get_config
    from engine.settings import Settings

    settings = Settings.from_config(get_config())
    settings.acquisition.max_attempts  # 5
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from engine.capability import Coordinate
from engine.errors import ValidationError

MIN_POLL_INTERVAL_MS = 500


def _range(value: Any, name: str) -> tuple[int, int]:
    if isinstance(value, (int, float)):
        return (int(value), int(value))
    try:
        low, high = (int(v) for v in value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a [min, max] pair, got {value!r}")
    if low < 0 or high < low:
        raise ValidationError(f"{name} must satisfy 0 <= min <= max, got {value!r}")
    return (low, high)


def _positive(value: Any, name: str, allow_zero: bool = False) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise ValidationError(f"{name} must be positive, got {value!r}")
    return number


def parse_key_set(spec: Any) -> frozenset[int]:
    """
    Parse a discovery candidate set.

    Accepts ints, "a-b" range strings, and lists mixing both:
        [1, 2, "100-120"] -> {1, 2, 100, ..., 120}
    """
    if spec is None:
        return frozenset()
    if isinstance(spec, (int, str)):
        spec = [spec]
    keys: set[int] = set()
    for item in spec:
        if isinstance(item, int):
            keys.add(item)
            continue
        text = str(item).strip()
        if "-" in text:
            low, _, high = text.partition("-")
            try:
                start, end = int(low), int(high)
            except ValueError:
                raise ValidationError(f"Bad key range: {item!r}")
            if end < start:
                raise ValidationError(f"Bad key range: {item!r}")
            keys.update(range(start, end + 1))
        else:
            try:
                keys.add(int(text))
            except ValueError:
                raise ValidationError(f"Bad signal key: {item!r}")
    return frozenset(keys)


@dataclass(frozen=True)
class OrchestratorSettings:
    max_retries: int = 3
    success_jitter_ms: tuple[int, int] = (1000, 2000)
    failure_jitter_ms: tuple[int, int] = (3000, 5000)


@dataclass(frozen=True)
class MonitorSettings:
    poll_interval_ms: int = MIN_POLL_INTERVAL_MS
    discovery_keys: frozenset[int] = frozenset()


@dataclass(frozen=True)
class AcquisitionSettings:
    max_attempts: int = 5
    order_timeout_s: float = 45.0
    total_timeout_s: float = 300.0
    fallback_price: int = 1000
    retry_markup_pct: int = 5
    poll_interval_ms: tuple[int, int] = (3000, 4000)
    navigation_attempts: int = 3
    navigation_timeout_s: float = 60.0
    navigation_tolerance: int = 5
    open_timeout_s: float = 10.0
    storage_open_timeout_s: float = 15.0
    withdraw_timeout_s: float = 3.0
    currency_item: str = "Coins"
    market_location: Coordinate = Coordinate(3164, 3487, 0)
    market_fallback_location: Coordinate = Coordinate(3165, 3484, 0)


@dataclass(frozen=True)
class AuditSettings:
    enabled: bool = True
    directory: str = "logs"


@dataclass(frozen=True)
class Settings:
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    acquisition: AcquisitionSettings = field(default_factory=AcquisitionSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    log_level: str = "INFO"
    log_format: str = "json"

    @staticmethod
    def from_config(config) -> Settings:
        """Build settings from a ConfigLoader (or anything with .get(dotted, default))."""
        defaults = AcquisitionSettings()

        orch = OrchestratorSettings(
            max_retries=_positive(config.get("orchestrator.max_retries", 3), "orchestrator.max_retries"),
            success_jitter_ms=_range(
                config.get("orchestrator.success_jitter_ms", [1000, 2000]),
                "orchestrator.success_jitter_ms"),
            failure_jitter_ms=_range(
                config.get("orchestrator.failure_jitter_ms", [3000, 5000]),
                "orchestrator.failure_jitter_ms"),
        )

        interval = _positive(config.get("monitor.poll_interval_ms", MIN_POLL_INTERVAL_MS),
                             "monitor.poll_interval_ms")
        if interval < MIN_POLL_INTERVAL_MS:
            raise ValidationError(
                f"monitor.poll_interval_ms must be >= {MIN_POLL_INTERVAL_MS}, got {interval}")
        monitor = MonitorSettings(
            poll_interval_ms=interval,
            discovery_keys=parse_key_set(config.get("monitor.discovery_keys", [])),
        )

        try:
            market_location = Coordinate.from_value(
                config.get("acquisition.market_location", defaults.market_location))
            fallback_location = Coordinate.from_value(
                config.get("acquisition.market_fallback_location", defaults.market_fallback_location))
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Bad market location: {e}")

        acq = AcquisitionSettings(
            max_attempts=_positive(config.get("acquisition.max_attempts", 5), "acquisition.max_attempts"),
            order_timeout_s=float(config.get("acquisition.order_timeout_s", 45)),
            total_timeout_s=float(config.get("acquisition.total_timeout_s", 300)),
            fallback_price=_positive(config.get("acquisition.fallback_price", 1000), "acquisition.fallback_price"),
            retry_markup_pct=_positive(config.get("acquisition.retry_markup_pct", 5),
                                       "acquisition.retry_markup_pct", allow_zero=True),
            poll_interval_ms=_range(config.get("acquisition.poll_interval_ms", [3000, 4000]),
                                    "acquisition.poll_interval_ms"),
            navigation_attempts=_positive(config.get("acquisition.navigation_attempts", 3),
                                          "acquisition.navigation_attempts"),
            navigation_timeout_s=float(config.get("acquisition.navigation_timeout_s", 60)),
            navigation_tolerance=_positive(config.get("acquisition.navigation_tolerance", 5),
                                           "acquisition.navigation_tolerance", allow_zero=True),
            open_timeout_s=float(config.get("acquisition.open_timeout_s", 10)),
            storage_open_timeout_s=float(config.get("acquisition.storage_open_timeout_s", 15)),
            withdraw_timeout_s=float(config.get("acquisition.withdraw_timeout_s", 3)),
            currency_item=str(config.get("acquisition.currency_item", "Coins")),
            market_location=market_location,
            market_fallback_location=fallback_location,
        )

        audit = AuditSettings(
            enabled=bool(config.get("audit.enabled", True)),
            directory=str(config.get("audit.directory", "logs")),
        )

        return Settings(
            orchestrator=orch,
            monitor=monitor,
            acquisition=acq,
            audit=audit,
            log_level=str(config.get("logging.level", "INFO")),
            log_format=str(config.get("logging.format", "json")),
        )
