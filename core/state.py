"""
State - Data Model for the Pyramid Trading Core

PyramidState is the only long-lived mutable record. It is owned by a
PyramidStateStore instance (never a module global) so several engines can
run side by side and tests can inject their own store.

Everything else here is a snapshot or a result value.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class Side(Enum):
    LONG = "long"
    SHORT = "short"
    NONE = "none"


class PyramidStatus(Enum):
    FLAT = "flat"
    BUILDING = "building"
    FULL = "full"
    REDUCING = "reducing"


class AlertLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _ALERT_RANK[self]


_ALERT_RANK = {
    AlertLevel.INFO: 0,
    AlertLevel.WARNING: 1,
    AlertLevel.CRITICAL: 2,
    AlertLevel.EMERGENCY: 3,
}


class ActionKind(Enum):
    NONE = "none"
    ADJUST_LEVERAGE = "adjust_leverage"
    REDUCE_POSITION = "reduce_position"
    CLOSE_POSITION = "close_position"


@dataclass
class TradingSignal:
    """A directional signal as delivered by the upstream webhook."""
    action: str  # "buy" or "sell"
    symbol: str
    price: Optional[float] = None
    strategy: Optional[str] = None
    confidence: Optional[float] = None
    leverage: Optional[float] = None
    timestamp: float = field(default_factory=time.time)
    signal_id: Optional[str] = None

    @property
    def side(self) -> Side:
        return Side.LONG if self.action == "buy" else Side.SHORT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingSignal":
        """
        Build a signal from a decoded JSON payload.

        Raises:
            ValueError if action or symbol is missing or malformed
        """
        action = str(data.get("action", "")).strip().lower()
        if action not in ("buy", "sell"):
            raise ValueError(f"Invalid action: {data.get('action')!r}")

        symbol = str(data.get("symbol", "")).strip().upper()
        if not symbol:
            raise ValueError("Missing symbol")

        def _opt_float(key):
            value = data.get(key)
            return None if value is None else float(value)

        timestamp = data.get("timestamp")
        if timestamp is None:
            timestamp = time.time()
        elif float(timestamp) > 1e12:
            # Millisecond epoch from TradingView
            timestamp = float(timestamp) / 1000.0

        signal_id = data.get("id", data.get("signal_id"))

        return cls(
            action=action,
            symbol=symbol,
            price=_opt_float("price"),
            strategy=data.get("strategy"),
            confidence=_opt_float("confidence"),
            leverage=_opt_float("leverage"),
            timestamp=float(timestamp),
            signal_id=None if signal_id is None else str(signal_id),
        )


@dataclass
class PyramidState:
    """
    Per-symbol pyramid bookkeeping.

    accumulated_size is a magnitude; the direction lives in side.
    exit_count counts consecutive opposite signals that were acted on.
    """
    symbol: str
    side: Side = Side.NONE
    status: PyramidStatus = PyramidStatus.FLAT
    current_level: int = 0
    accumulated_size: float = 0.0
    average_entry_price: float = 0.0
    exit_count: int = 0
    last_action_at: float = 0.0
    last_order_id: Optional[str] = None

    @property
    def is_flat(self) -> bool:
        return self.status == PyramidStatus.FLAT

    def reset(self):
        """Back to flat, level 0."""
        self.side = Side.NONE
        self.status = PyramidStatus.FLAT
        self.current_level = 0
        self.accumulated_size = 0.0
        self.average_entry_price = 0.0
        self.exit_count = 0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "status": self.status.value,
            "current_level": self.current_level,
            "accumulated_size": self.accumulated_size,
            "average_entry_price": self.average_entry_price,
            "exit_count": self.exit_count,
            "last_action_at": self.last_action_at,
            "last_order_id": self.last_order_id,
        }


@dataclass(frozen=True)
class AccountMetrics:
    """Account snapshot, recomputed on every tick and every sizing call."""
    account_value: float
    total_margin_used: float = 0.0
    total_notional_position: float = 0.0
    available_balance: float = 0.0
    current_leverage: float = 0.0
    max_allowed_leverage: float = 10.0


@dataclass(frozen=True)
class ExchangePosition:
    """Read-only view of an exchange position. size is signed."""
    symbol: str
    size: float
    entry_price: float
    notional_value: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 1.0

    @property
    def abs_size(self) -> float:
        return abs(self.size)

    @property
    def side(self) -> Side:
        if self.size > 0:
            return Side.LONG
        if self.size < 0:
            return Side.SHORT
        return Side.NONE

    @property
    def notional(self) -> float:
        """Exchange-reported notional, or size x entry when missing."""
        if self.notional_value > 0:
            return self.notional_value
        return self.abs_size * self.entry_price


@dataclass(frozen=True)
class MarginAlert:
    level: AlertLevel
    message: str
    margin_ratio: float
    available_margin: float
    recommended_action: ActionKind = ActionKind.NONE
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "level": self.level.value,
            "message": self.message,
            "margin_ratio": self.margin_ratio,
            "available_margin": self.available_margin,
            "recommended_action": self.recommended_action.value,
            "timestamp": self.timestamp,
        }


@dataclass
class PositionSizingResult:
    required_margin: float
    available_margin: float
    max_position_size: float
    actual_position_size: float
    leverage: float
    margin_ratio: float
    is_valid: bool
    warnings: List[str] = field(default_factory=list)
    price: float = 0.0
    reason: str = ""

    @classmethod
    def invalid(cls, reason: str) -> "PositionSizingResult":
        return cls(
            required_margin=0.0,
            available_margin=0.0,
            max_position_size=0.0,
            actual_position_size=0.0,
            leverage=0.0,
            margin_ratio=0.0,
            is_valid=False,
            warnings=[reason],
            reason=reason,
        )


@dataclass
class OrderOutcome:
    """Normalized result of a single order submission."""
    status: str  # "filled", "failed" or "timeout"
    filled_size: float = 0.0
    avg_price: float = 0.0
    order_id: Optional[str] = None
    error: str = ""

    @property
    def filled(self) -> bool:
        return self.status == "filled"


@dataclass
class SignalResult:
    success: bool
    reason: str = ""
    order_id: Optional[str] = None
    state: Optional[PyramidState] = None
    error_kind: Optional[str] = None  # "validation", "external" or None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reason": self.reason,
            "order_id": self.order_id,
            "state": self.state.to_dict() if self.state else None,
            "error_kind": self.error_kind,
            "warnings": list(self.warnings),
        }


class PyramidStateStore:
    """
    Instance-owned map of symbol -> PyramidState.

    Only the owning PyramidEngine mutates the states it hands out.
    Readers get deep copies.
    """

    def __init__(self, states: Optional[Dict[str, PyramidState]] = None):
        self._states: Dict[str, PyramidState] = dict(states or {})

    def get_or_create(self, symbol: str) -> PyramidState:
        state = self._states.get(symbol)
        if state is None:
            state = PyramidState(symbol=symbol)
            self._states[symbol] = state
            logger.debug(f"Created pyramid state for {symbol}")
        return state

    def get(self, symbol: str) -> Optional[PyramidState]:
        return self._states.get(symbol)

    def put(self, state: PyramidState):
        self._states[state.symbol] = state

    def symbols(self) -> List[str]:
        return list(self._states.keys())

    def snapshot(self) -> Dict[str, PyramidState]:
        return {symbol: copy.deepcopy(state) for symbol, state in self._states.items()}


@dataclass
class MarginAction:
    """Corrective action chosen for one monitor tick."""
    kind: ActionKind = ActionKind.NONE
    symbol: Optional[str] = None
    size: float = 0.0
    is_buy: bool = False
    symbols: List[str] = field(default_factory=list)
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "symbol": self.symbol,
            "size": self.size,
            "is_buy": self.is_buy,
            "symbols": list(self.symbols),
            "reason": self.reason,
        }


@dataclass
class MarginStatus:
    is_healthy: bool
    margin_ratio: float
    leverage_ratio: float
    available_margin: float
    total_margin_used: float
    account_value: float
    alerts: List[MarginAlert] = field(default_factory=list)
    requires_action: bool = False
    action: MarginAction = field(default_factory=MarginAction)
    action_error: Optional[str] = None
    last_check: float = field(default_factory=time.time)

    @property
    def highest_level(self) -> Optional[AlertLevel]:
        if not self.alerts:
            return None
        return max((a.level for a in self.alerts), key=lambda level: level.rank)

    def to_dict(self) -> dict:
        return {
            "is_healthy": self.is_healthy,
            "margin_ratio": self.margin_ratio,
            "leverage_ratio": self.leverage_ratio,
            "available_margin": self.available_margin,
            "total_margin_used": self.total_margin_used,
            "account_value": self.account_value,
            "alerts": [a.to_dict() for a in self.alerts],
            "requires_action": self.requires_action,
            "action": self.action.to_dict(),
            "action_error": self.action_error,
            "last_check": self.last_check,
        }
