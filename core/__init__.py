# Core module - Pyramid engine, sizing and margin safety
from .errors import PyramidBotError, ConfigError, ExchangeError, ExchangeTimeout
from .settings import PyramidConfig, MonitorConfig, LeverageConfig
from .state import (
    TradingSignal, PyramidState, PyramidStateStore, AccountMetrics,
    ExchangePosition, MarginAlert, MarginStatus, SignalResult,
)
from .position_sizer import PositionSizer, round_position_size
from .execution_guard import ExecutionGuard
from .pyramid_engine import PyramidEngine
from .leverage_manager import LeverageManager
from .margin_monitor import MarginMonitor, classify_alerts, decide_action

__all__ = [
    'PyramidBotError', 'ConfigError', 'ExchangeError', 'ExchangeTimeout',
    'PyramidConfig', 'MonitorConfig', 'LeverageConfig',
    'TradingSignal', 'PyramidState', 'PyramidStateStore', 'AccountMetrics',
    'ExchangePosition', 'MarginAlert', 'MarginStatus', 'SignalResult',
    'PositionSizer', 'round_position_size', 'ExecutionGuard', 'PyramidEngine',
    'LeverageManager', 'MarginMonitor', 'classify_alerts', 'decide_action',
]
