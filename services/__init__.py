
# Services module - signal intake and the status API
from .signal_feed import SignalFeed
from .status_server import StatusServer

__all__ = ['SignalFeed', 'StatusServer']
