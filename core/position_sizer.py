"""
PositionSizer - Margin and Leverage Math

Pure functions over account snapshots. Nothing here touches the exchange,
the clock or any shared state, so every method is safe to call from any task.

Sizing never raises on bad input: it returns an invalid PositionSizingResult
carrying the reason.
"""

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Iterable, List, Tuple

from core.settings import PyramidConfig
from core.state import AccountMetrics, ExchangePosition, PositionSizingResult

logger = logging.getLogger(__name__)

DEFAULT_LEVERAGE = 5.0
HIGH_RISK_LEVERAGE = 20.0
MAINTENANCE_MARGIN_RATIO = 0.03
ACTION_MARGIN_RATIO = 0.9
HEALTHY_MARGIN_RATIO = 0.8
LOW_FREE_MARGIN_FRACTION = 0.10


def round_position_size(size: float, decimals: int) -> float:
    """Round toward zero at the given number of decimals. Idempotent."""
    if size is None or not math.isfinite(size):
        return 0.0
    quantum = Decimal(1).scaleb(-max(0, int(decimals)))
    return float(Decimal(str(size)).quantize(quantum, rounding=ROUND_DOWN))


@dataclass
class ReductionPlan:
    size: float
    fraction: float
    closes_position: bool


@dataclass
class MarginHealth:
    is_healthy: bool
    margin_ratio: float
    leverage_ratio: float
    requires_action: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class LeverageCheck:
    is_valid: bool
    leverage: float
    warning: str = ""


class PositionSizer:
    """
    Margin-aware sizing for pyramid levels.

    Args:
        max_leverage: Hard leverage ceiling applied to every sizing call
        default_leverage: Substituted when a requested leverage is unusable
    """

    def __init__(self, max_leverage: float = 50.0, default_leverage: float = DEFAULT_LEVERAGE):
        self.max_leverage = max_leverage
        self.default_leverage = default_leverage

    # ========== ENTRY SIZING ==========

    def size_for_level(self, level: int, metrics: AccountMetrics, price: float,
                       config: PyramidConfig, symbol: str = "",
                       leverage: float = None) -> PositionSizingResult:
        """
        Size one pyramid add.

        Args:
            level: Zero-based level index (clamped to the configured table)
            metrics: Current account snapshot
            price: Signal or market price
            config: Pyramid parameters
            symbol: Used only to pick size precision
            leverage: Overrides the per-level leverage when given

        Returns:
            PositionSizingResult; is_valid is False with a reason on rejection
        """
        account_value = metrics.account_value
        if account_value < config.min_account_balance:
            return PositionSizingResult.invalid(
                f"Account value ${account_value:.2f} below minimum ${config.min_account_balance:.2f}"
            )
        if price is None or price <= 0:
            return PositionSizingResult.invalid(f"Invalid price: {price}")

        used = metrics.total_margin_used
        desired_margin = account_value * config.margin_pct_for_level(level)
        available_margin = (account_value - used) * config.safety_buffer
        max_allowed_margin = account_value * config.max_exposure - used

        margin_to_use = min(desired_margin, available_margin, max_allowed_margin)
        if margin_to_use <= 0:
            return PositionSizingResult.invalid(
                f"No margin available (used ${used:.2f} of ${account_value:.2f})"
            )

        requested = config.leverage_for_level(level) if leverage is None else leverage
        lev = max(1.0, min(float(requested), self.max_leverage, config.max_leverage))

        # Size against the worst accepted fill of the IOC add order
        sizing_price = price * (1 + config.entry_price_buffer)
        raw_size = margin_to_use * lev / sizing_price
        actual_size = round_position_size(raw_size, config.decimals_for(symbol))

        if actual_size < config.min_order_size:
            result = PositionSizingResult.invalid(
                f"Position size {actual_size} below minimum {config.min_order_size}"
            )
            result.available_margin = available_margin
            result.max_position_size = raw_size
            result.leverage = lev
            result.price = sizing_price
            return result

        required_margin = actual_size * sizing_price / lev
        margin_ratio = (used + required_margin) / account_value

        warnings = []
        if margin_ratio > config.warning_margin_ratio:
            warnings.append(f"High margin usage: {margin_ratio:.1%}")
        exposure_limit = account_value * config.max_exposure
        if used + desired_margin > exposure_limit or used + required_margin > exposure_limit:
            warnings.append(f"Exposure capped at {config.max_exposure:.0%} of account")
        maintenance = actual_size * sizing_price * config.maintenance_margin_ratio
        free_after = account_value - used - required_margin
        if free_after < 2 * maintenance:
            warnings.append(
                f"Free balance ${free_after:.2f} below twice maintenance margin ${maintenance:.2f}"
            )

        return PositionSizingResult(
            required_margin=required_margin,
            available_margin=available_margin,
            max_position_size=raw_size,
            actual_position_size=actual_size,
            leverage=lev,
            margin_ratio=margin_ratio,
            is_valid=True,
            warnings=warnings,
            price=sizing_price,
        )

    def size_for_reduction(self, held_size: float, exit_count: int,
                           config: PyramidConfig, symbol: str = "") -> ReductionPlan:
        """Size the next exit from a held magnitude and the consecutive exit count."""
        held = abs(held_size)
        fraction = config.exit_fraction(exit_count)
        size = round_position_size(held * fraction, config.decimals_for(symbol))

        # Never leave dust behind, and never send a dust order
        if held - size < config.min_order_size or size < config.min_order_size:
            return ReductionPlan(size=held, fraction=1.0, closes_position=True)
        return ReductionPlan(size=size, fraction=fraction, closes_position=False)

    # ========== ACCOUNT HEALTH ==========

    def check_margin_health(self, metrics: AccountMetrics) -> MarginHealth:
        if metrics.account_value <= 0:
            margin_ratio = 0.0
            leverage_ratio = 0.0
        else:
            margin_ratio = metrics.total_margin_used / metrics.account_value
            leverage_ratio = metrics.total_notional_position / metrics.account_value

        requires_action = (margin_ratio > ACTION_MARGIN_RATIO
                           or leverage_ratio > metrics.max_allowed_leverage)
        is_healthy = margin_ratio < HEALTHY_MARGIN_RATIO and not requires_action

        warnings = []
        if margin_ratio > ACTION_MARGIN_RATIO:
            warnings.append(f"Margin ratio {margin_ratio:.1%} above {ACTION_MARGIN_RATIO:.0%}")
        if leverage_ratio > metrics.max_allowed_leverage:
            warnings.append(
                f"Account leverage {leverage_ratio:.2f}x above {metrics.max_allowed_leverage:.0f}x"
            )
        free_margin = metrics.account_value - metrics.total_margin_used
        if metrics.account_value > 0 and free_margin < metrics.account_value * LOW_FREE_MARGIN_FRACTION:
            warnings.append(f"Low free margin: ${free_margin:.2f}")

        return MarginHealth(
            is_healthy=is_healthy,
            margin_ratio=margin_ratio,
            leverage_ratio=leverage_ratio,
            requires_action=requires_action,
            warnings=warnings,
        )

    # ========== LEVERAGE ==========

    def calculate_dynamic_leverage(self, base_leverage: float, volatility: float,
                                   account_health: float) -> float:
        """
        Scale leverage down for volatile markets and stressed accounts.

        Args:
            base_leverage: Starting point
            volatility: Fractional volatility estimate (0.03 = 3%)
            account_health: 1 - margin_ratio

        Returns:
            Leverage clamped to [1, max_leverage]
        """
        lev = base_leverage
        if volatility > 0.05:
            lev *= 0.6
        elif volatility > 0.02:
            lev *= 0.8
        if account_health < 0.5:
            lev *= 0.7
        return max(1.0, min(lev, self.max_leverage))

    def validate_leverage(self, leverage: float) -> LeverageCheck:
        if leverage is None or leverage <= 0:
            return LeverageCheck(False, self.default_leverage,
                                 f"Invalid leverage {leverage}, using {self.default_leverage:.0f}x")
        if leverage > self.max_leverage:
            return LeverageCheck(False, self.max_leverage,
                                 f"Leverage {leverage}x above maximum, capped at {self.max_leverage:.0f}x")
        if leverage > HIGH_RISK_LEVERAGE:
            return LeverageCheck(True, float(leverage), f"High risk leverage: {leverage}x")
        return LeverageCheck(True, float(leverage))

    # ========== SNAPSHOTS ==========

    def build_account_metrics(self, account_value: float,
                              positions: Iterable[ExchangePosition],
                              max_allowed_leverage: float = 10.0) -> AccountMetrics:
        total_notional = 0.0
        total_margin = 0.0
        for pos in positions:
            notional = pos.notional
            total_notional += notional
            total_margin += notional / max(pos.leverage, 1.0)

        return AccountMetrics(
            account_value=account_value,
            total_margin_used=total_margin,
            total_notional_position=total_notional,
            available_balance=max(0.0, account_value - total_margin),
            current_leverage=total_notional / account_value if account_value > 0 else 0.0,
            max_allowed_leverage=max_allowed_leverage,
        )


def largest_position(positions: Iterable[ExchangePosition]) -> Tuple[ExchangePosition, float]:
    """Largest open position by notional, or (None, 0.0)."""
    best, best_notional = None, 0.0
    for pos in positions:
        if pos.abs_size <= 0:
            continue
        if best is None or pos.notional > best_notional:
            best, best_notional = pos, pos.notional
    return best, best_notional
