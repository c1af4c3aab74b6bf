# Utility modules
from .panic_switch import PanicSwitch
from .hyperliquid_client import HyperliquidClient
from .notifier import Notifier, get_notifier

__all__ = ['PanicSwitch', 'HyperliquidClient', 'Notifier', 'get_notifier']
