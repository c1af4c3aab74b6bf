"""
Notifier - Status Fan-out and Discord Webhook Notifications

Broadcasts margin status, alerts and position updates to in-process
subscribers (the status server's websocket clients, tests) and pushes the
important ones to Discord.

Nothing here ever raises into the caller: a failing subscriber or webhook
is logged and skipped.
"""

import asyncio
import aiohttp
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.state import AlertLevel, MarginStatus

logger = logging.getLogger(__name__)

# Event types delivered to subscribers
MARGIN_UPDATE = "margin_update"
ALERT = "alert"
POSITION_UPDATE = "position_update"

_LEVEL_COLORS = {
    AlertLevel.INFO: 0x00ffff,       # Cyan
    AlertLevel.WARNING: 0xff9900,    # Orange
    AlertLevel.CRITICAL: 0xff3300,
    AlertLevel.EMERGENCY: 0xff0000,  # Red
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Notifier:
    """
    Subscriber fan-out plus Discord webhook.

    Subscribers are called as callback(event_type, payload). A callback may
    return a coroutine; it is scheduled on the running loop.

    Args:
        webhook_url: Discord webhook URL. Falls back to env var.
    """

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url if webhook_url is not None else os.getenv("DISCORD_WEBHOOK_URL", "")
        self.enabled = bool(self.webhook_url)
        self.bot_name = "🔺 Pyramid Bot"
        self._subscribers: List[Callable[[str, Dict[str, Any]], Any]] = []
        self._last_margin_level: Optional[AlertLevel] = None
        self._pending: set = set()

        if not self.enabled:
            logger.warning("⚠️ Discord notifications disabled (no webhook URL)")

    # ========== SUBSCRIBERS ==========

    def subscribe(self, callback: Callable[[str, Dict[str, Any]], Any]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, event_type: str, payload: Dict[str, Any]):
        for callback in list(self._subscribers):
            try:
                result = callback(event_type, payload)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"Subscriber error on {event_type}: {e}")

    def _schedule(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running loop - async subscriber skipped")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    # ========== BROADCASTS ==========

    def broadcast_margin_update(self, status: MarginStatus):
        """Fan out a monitor tick; Discord only when the level changes at warning or above."""
        self._publish(MARGIN_UPDATE, status.to_dict())

        level = status.highest_level
        changed = level != self._last_margin_level
        self._last_margin_level = level
        if changed and level is not None and level.rank >= AlertLevel.WARNING.rank:
            self.margin_warning(status.margin_ratio, level,
                                status.alerts[0].message if status.alerts else "")

    def broadcast_alert(self, alert: Dict[str, Any]):
        """Alert dict: {type, symbol, reason, margin_ratio, ...}."""
        payload = dict(alert)
        payload.setdefault("timestamp", _now_iso())
        self._publish(ALERT, payload)

        fields = [
            {"name": "Symbol", "value": str(payload.get("symbol", "-")), "inline": True},
            {"name": "Type", "value": str(payload.get("type", "-")), "inline": True},
        ]
        if payload.get("margin_ratio") is not None:
            fields.append({"name": "Margin Ratio", "value": f"{payload['margin_ratio']:.1%}", "inline": True})
        self._fire_and_forget({
            "title": f"🚨 {str(payload.get('type', 'alert')).replace('_', ' ').title()}",
            "color": 0xff0000,
            "description": str(payload.get("reason", "")),
            "fields": fields,
            "timestamp": payload["timestamp"],
        })

    def broadcast_position_update(self, update: Dict[str, Any]):
        self._publish(POSITION_UPDATE, dict(update))

    # ========== DISCORD ==========

    async def _send(self, embed: dict):
        """Send embed to Discord webhook (non-blocking)."""
        if not self.enabled:
            return

        try:
            async with aiohttp.ClientSession() as session:
                payload = {
                    "username": self.bot_name,
                    "embeds": [embed]
                }
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5)
                ) as resp:
                    if resp.status != 204:
                        logger.warning(f"Discord webhook failed: {resp.status}")
        except Exception as e:
            logger.error(f"Notification error: {e}")

    def _fire_and_forget(self, embed: dict):
        """Fire notification without blocking."""
        if not self.enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._send(embed))
            return
        task = loop.create_task(self._send(embed))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self):
        """Wait for queued webhook posts and async subscribers (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ========== EVENT METHODS ==========

    def startup(self, wallet: str, mode: str, style: str):
        """Bot started."""
        embed = {
            "title": "🚀 Bot Started",
            "color": 0x00ff00,  # Green
            "fields": [
                {"name": "Wallet", "value": f"`{wallet[:10]}...`", "inline": True},
                {"name": "Mode", "value": mode, "inline": True},
                {"name": "Pyramid", "value": style, "inline": True},
            ],
            "timestamp": _now_iso()
        }
        self._fire_and_forget(embed)

    def shutdown(self, reason: str = "Manual"):
        """Bot stopped."""
        embed = {
            "title": "🛑 Bot Stopped",
            "color": 0xffff00,  # Yellow
            "description": f"Reason: {reason}",
            "timestamp": _now_iso()
        }
        self._fire_and_forget(embed)

    def panic_triggered(self, positions: int, reason: str):
        """Panic switch activated."""
        embed = {
            "title": "🚨 PANIC SWITCH TRIGGERED",
            "color": 0xff0000,  # Red
            "description": f"**Reason:** {reason}",
            "fields": [
                {"name": "Positions Closed", "value": str(positions), "inline": True},
            ],
            "timestamp": _now_iso()
        }
        self._fire_and_forget(embed)

    def error(self, error_type: str, message: str, fatal: bool = False):
        """Error occurred."""
        embed = {
            "title": "❌ FATAL ERROR" if fatal else "⚠️ Error",
            "color": 0xff0000 if fatal else 0xff9900,
            "fields": [
                {"name": "Type", "value": error_type, "inline": True},
                {"name": "Message", "value": f"```{message[:500]}```", "inline": False},
            ],
            "timestamp": _now_iso()
        }
        self._fire_and_forget(embed)

    def margin_warning(self, margin_ratio: float, level: AlertLevel, message: str):
        """Margin level changed to warning or worse."""
        embed = {
            "title": f"⚠️ Margin {level.value.title()}",
            "color": _LEVEL_COLORS.get(level, 0xff9900),
            "description": message,
            "fields": [
                {"name": "Margin Ratio", "value": f"{margin_ratio:.1%}", "inline": True},
            ],
            "timestamp": _now_iso()
        }
        self._fire_and_forget(embed)


# Singleton instance
_notifier: Optional[Notifier] = None

def get_notifier(webhook_url: Optional[str] = None) -> Notifier:
    """Get or create the global notifier instance."""
    global _notifier
    if _notifier is None:
        _notifier = Notifier(webhook_url)
    return _notifier
