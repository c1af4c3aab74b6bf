"""
Settings - Typed configuration objects

The top-level config module is read once, here. Components receive these
frozen dataclasses by injection and never touch config at call time.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Tuple

from core.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PyramidConfig:
    """Pyramid strategy and sizing parameters. Fractions, not percents."""
    level_margin_pcts: Tuple[float, ...] = (0.10, 0.15, 0.20, 0.25)
    level_leverage: Tuple[float, ...] = (5.0, 5.0, 5.0, 5.0)
    max_levels: int = 4
    exit_fractions: Tuple[float, ...] = (0.5, 1.0)
    max_exposure: float = 0.70
    safety_buffer: float = 0.95
    min_order_size: float = 0.01
    max_leverage: float = 50.0
    min_account_balance: float = 100.0
    warning_margin_ratio: float = 0.8
    maintenance_margin_ratio: float = 0.03
    entry_price_buffer: float = 0.001
    enable_shorts: bool = True
    size_decimals: Dict[str, int] = field(default_factory=lambda: {"SOL": 2})
    default_size_decimals: int = 4
    signal_dedup_window: int = 256

    def margin_pct_for_level(self, level: int) -> float:
        idx = max(0, min(level, len(self.level_margin_pcts) - 1))
        return self.level_margin_pcts[idx]

    def leverage_for_level(self, level: int) -> float:
        idx = max(0, min(level, len(self.level_leverage) - 1))
        return self.level_leverage[idx]

    def exit_fraction(self, exit_count: int) -> float:
        idx = max(0, min(exit_count, len(self.exit_fractions) - 1))
        return min(1.0, self.exit_fractions[idx])

    def decimals_for(self, symbol: str) -> int:
        return self.size_decimals.get(symbol.upper(), self.default_size_decimals)

    def validate(self) -> "PyramidConfig":
        if self.max_levels < 1:
            raise ConfigError(f"max_levels must be >= 1, got {self.max_levels}")
        if not self.level_margin_pcts:
            raise ConfigError("level_margin_pcts must not be empty")
        if any(p <= 0 or p > 1 for p in self.level_margin_pcts):
            raise ConfigError(f"level margin fractions must be in (0, 1]: {self.level_margin_pcts}")
        if not self.level_leverage or any(lev < 1 for lev in self.level_leverage):
            raise ConfigError(f"level leverage must be >= 1: {self.level_leverage}")
        if not self.exit_fractions or any(f <= 0 for f in self.exit_fractions):
            raise ConfigError(f"exit fractions must be > 0: {self.exit_fractions}")
        if not 0 < self.max_exposure <= 1:
            raise ConfigError(f"max_exposure must be in (0, 1], got {self.max_exposure}")
        if not 0 < self.safety_buffer <= 1:
            raise ConfigError(f"safety_buffer must be in (0, 1], got {self.safety_buffer}")
        if self.min_order_size <= 0:
            raise ConfigError(f"min_order_size must be > 0, got {self.min_order_size}")
        if self.max_leverage < 1:
            raise ConfigError(f"max_leverage must be >= 1, got {self.max_leverage}")
        if self.entry_price_buffer < 0:
            raise ConfigError(f"entry_price_buffer must be >= 0, got {self.entry_price_buffer}")
        return self

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("level_margin_pcts", "level_leverage", "exit_fractions"):
            data[key] = list(data[key])
        return data

    @classmethod
    def from_config(cls, cfg) -> "PyramidConfig":
        """Build from the top-level config module. Percent lists are converted to fractions."""
        max_levels = int(getattr(cfg, "MAX_PYRAMID_LEVELS", 4))
        margin_pcts = tuple(float(p) / 100.0 for p in getattr(cfg, "PYRAMID_MARGIN_PERCENTAGES", [10, 15, 20, 25]))
        leverage = tuple(float(v) for v in getattr(cfg, "PYRAMID_LEVERAGE_LEVELS", [5] * max_levels))
        exits = tuple(float(p) / 100.0 for p in getattr(cfg, "PYRAMID_EXIT_PERCENTAGES", [50, 100]))

        if len(margin_pcts) < max_levels:
            logger.warning(
                f"⚠️ {len(margin_pcts)} margin percentages for {max_levels} levels - "
                f"last value reused for higher levels"
            )

        return cls(
            level_margin_pcts=margin_pcts,
            level_leverage=leverage,
            max_levels=max_levels,
            exit_fractions=exits,
            max_exposure=float(getattr(cfg, "MAX_ACCOUNT_EXPOSURE", 0.70)),
            safety_buffer=float(getattr(cfg, "MARGIN_SAFETY_BUFFER", 0.95)),
            min_order_size=float(getattr(cfg, "MIN_ORDER_SIZE", 0.01)),
            max_leverage=float(getattr(cfg, "MAX_LEVERAGE", 50)),
            min_account_balance=float(getattr(cfg, "MIN_ACCOUNT_BALANCE", 100)),
            warning_margin_ratio=float(getattr(cfg, "WARNING_MARGIN_RATIO", 0.8)),
            entry_price_buffer=float(getattr(cfg, "ENTRY_PRICE_BUFFER", 0.001)),
            enable_shorts=bool(getattr(cfg, "ENABLE_SHORTS", True)),
            size_decimals=dict(getattr(cfg, "SIZE_DECIMALS", {"SOL": 2})),
            default_size_decimals=int(getattr(cfg, "DEFAULT_SIZE_DECIMALS", 4)),
        ).validate()


@dataclass(frozen=True)
class MonitorConfig:
    """Margin monitor thresholds and timing."""
    interval_seconds: float = 5.0
    info_threshold: float = 0.50
    warning_threshold: float = 0.70
    critical_threshold: float = 0.85
    emergency_threshold: float = 0.95
    low_free_margin_fraction: float = 0.10
    emergency_cooldown_seconds: float = 300.0
    critical_reduce_fraction: float = 0.5
    safe_leverage_ceiling: float = 5.0
    max_allowed_leverage: float = 10.0
    min_order_size: float = 0.01
    alert_history_size: int = 100

    def validate(self) -> "MonitorConfig":
        if self.interval_seconds <= 0:
            raise ConfigError(f"interval_seconds must be > 0, got {self.interval_seconds}")
        ordered = (self.info_threshold, self.warning_threshold,
                   self.critical_threshold, self.emergency_threshold)
        if list(ordered) != sorted(ordered):
            raise ConfigError(f"alert thresholds must be ascending: {ordered}")
        if not 0 < self.critical_reduce_fraction <= 1:
            raise ConfigError(f"critical_reduce_fraction must be in (0, 1], got {self.critical_reduce_fraction}")
        if self.emergency_cooldown_seconds < 0:
            raise ConfigError("emergency_cooldown_seconds must be >= 0")
        if self.alert_history_size < 1:
            raise ConfigError("alert_history_size must be >= 1")
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_config(cls, cfg) -> "MonitorConfig":
        return cls(
            interval_seconds=float(getattr(cfg, "MONITOR_INTERVAL_SECONDS", 5)),
            info_threshold=float(getattr(cfg, "ALERT_INFO", 0.50)),
            warning_threshold=float(getattr(cfg, "ALERT_WARNING", 0.70)),
            critical_threshold=float(getattr(cfg, "ALERT_CRITICAL", 0.85)),
            emergency_threshold=float(getattr(cfg, "ALERT_EMERGENCY", 0.95)),
            emergency_cooldown_seconds=float(getattr(cfg, "EMERGENCY_COOLDOWN_SECONDS", 300)),
            critical_reduce_fraction=float(getattr(cfg, "CRITICAL_REDUCE_FRACTION", 0.5)),
            safe_leverage_ceiling=float(getattr(cfg, "SAFE_LEVERAGE_CEILING", 5)),
            max_allowed_leverage=float(getattr(cfg, "MAX_ALLOWED_ACCOUNT_LEVERAGE", 10)),
            min_order_size=float(getattr(cfg, "MIN_ORDER_SIZE", 0.01)),
            alert_history_size=int(getattr(cfg, "ALERT_HISTORY_SIZE", 100)),
        ).validate()


@dataclass(frozen=True)
class LeverageConfig:
    base_leverage: float = 5.0
    min_leverage: float = 1.0
    max_leverage: float = 10.0
    safe_ceiling: float = 5.0
    margin_threshold: float = 0.7
    adjust_cooldown_seconds: float = 60.0
    default_volatility: float = 0.02
    auto_adjust: bool = True

    @classmethod
    def from_config(cls, cfg, ceiling: Optional[float] = None) -> "LeverageConfig":
        return cls(
            base_leverage=float(getattr(cfg, "BASE_LEVERAGE", 5)),
            max_leverage=float(getattr(cfg, "MAX_ALLOWED_ACCOUNT_LEVERAGE", 10)),
            safe_ceiling=float(ceiling if ceiling is not None else getattr(cfg, "SAFE_LEVERAGE_CEILING", 5)),
            margin_threshold=float(getattr(cfg, "LEVERAGE_MARGIN_THRESHOLD", 0.7)),
            adjust_cooldown_seconds=float(getattr(cfg, "LEVERAGE_ADJUST_COOLDOWN_SECONDS", 60)),
            default_volatility=float(getattr(cfg, "DEFAULT_VOLATILITY", 0.02)),
        )
