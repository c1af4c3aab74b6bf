"""
Status Server - JSON API for the Pyramid Bot

Read-only views over the running bot plus the two bookkeeping
operations (reset, clear alerts):

    GET    /api/health
    GET    /api/states
    GET    /api/states/{symbol}
    GET    /api/config
    GET    /api/margin
    GET    /api/alerts
    DELETE /api/alerts
    POST   /api/reset
    POST   /api/reset/{symbol}
    GET    /ws                     live notifier events

Resets only touch engine bookkeeping, never exchange positions.
"""

import json
import logging
import time
from typing import List, Optional

from aiohttp import web
import aiohttp_cors

logger = logging.getLogger(__name__)


class StatusServer:
    """
    Args:
        engine: PyramidEngine
        monitor: MarginMonitor
        notifier: Notifier whose events are streamed to /ws clients
        host: Bind address
        port: Bind port
    """

    def __init__(self, engine, monitor, notifier=None, host: str = "0.0.0.0", port: int = 8080):
        self.engine = engine
        self.monitor = monitor
        self.notifier = notifier
        self.host = host
        self.port = port
        self.started_at = time.time()
        self.ws_clients: List[web.WebSocketResponse] = []
        self._runner: Optional[web.AppRunner] = None
        self._unsubscribe = None

    def build_app(self) -> web.Application:
        app = web.Application()

        # Setup CORS
        cors = aiohttp_cors.setup(app, defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
            )
        })

        # Routes
        app.router.add_get("/api/health", self.handle_health)
        app.router.add_get("/api/states", self.handle_get_states)
        app.router.add_get("/api/states/{symbol}", self.handle_get_state)
        app.router.add_get("/api/config", self.handle_get_config)
        app.router.add_get("/api/margin", self.handle_get_margin)
        app.router.add_get("/api/alerts", self.handle_get_alerts)
        app.router.add_delete("/api/alerts", self.handle_clear_alerts)
        app.router.add_post("/api/reset", self.handle_reset_all)
        app.router.add_post("/api/reset/{symbol}", self.handle_reset_symbol)
        app.router.add_get("/ws", self.handle_websocket)

        # Apply CORS to API routes
        for route in list(app.router.routes()):
            if "/api" in str(route.resource):
                cors.add(route)

        return app

    async def start(self):
        """Start serving in the background."""
        if self.notifier is not None:
            self._unsubscribe = self.notifier.subscribe(self._on_event)

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"🖥️  Status API running at http://localhost:{self.port}/api/health")

    async def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for ws in list(self.ws_clients):
            await ws.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ========== LIVE EVENTS ==========

    async def _on_event(self, event_type: str, payload: dict):
        """Broadcast a notifier event to all WebSocket clients."""
        if not self.ws_clients:
            return

        message = json.dumps({"type": event_type, "data": payload})
        dead_clients = []
        for ws in self.ws_clients:
            try:
                await ws.send_str(message)
            except (ConnectionError, RuntimeError):
                dead_clients.append(ws)

        # Remove dead clients
        for ws in dead_clients:
            if ws in self.ws_clients:
                self.ws_clients.remove(ws)

    async def handle_websocket(self, request):
        """Handle WebSocket connections for real-time updates."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self.ws_clients.append(ws)
        logger.info(f"Status client connected. Total: {len(self.ws_clients)}")

        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str(json.dumps({"pong": True}))
        finally:
            if ws in self.ws_clients:
                self.ws_clients.remove(ws)
            logger.info(f"Status client disconnected. Total: {len(self.ws_clients)}")

        return ws

    # ========== HANDLERS ==========

    async def handle_health(self, request):
        status = self.monitor.last_status
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(time.time() - self.started_at, 1),
            "monitor_active": self.monitor.is_active(),
            "dry_run": getattr(self.engine.guard, "dry_run", None),
            "symbols": len(self.engine.get_states()),
            "margin_healthy": None if status is None else status.is_healthy,
        })

    async def handle_get_states(self, request):
        states = self.engine.get_states()
        return web.json_response({symbol: state.to_dict() for symbol, state in states.items()})

    async def handle_get_state(self, request):
        symbol = request.match_info["symbol"].upper()
        state = self.engine.get_state(symbol)
        if state is None:
            return web.json_response({"error": f"No state for {symbol}"}, status=404)
        return web.json_response(state.to_dict())

    async def handle_get_config(self, request):
        return web.json_response({
            "pyramid": self.engine.get_config(),
            "monitor": self.monitor.config.to_dict(),
        })

    async def handle_get_margin(self, request):
        status = self.monitor.last_status
        if status is None:
            return web.json_response({"error": "No margin check yet"}, status=503)
        return web.json_response(status.to_dict())

    async def handle_get_alerts(self, request):
        return web.json_response([a.to_dict() for a in self.monitor.get_alert_history()])

    async def handle_clear_alerts(self, request):
        self.monitor.clear_alert_history()
        return web.json_response({"cleared": True})

    async def handle_reset_all(self, request):
        await self.engine.reset_all()
        return web.json_response({"reset": "all"})

    async def handle_reset_symbol(self, request):
        symbol = request.match_info["symbol"].upper()
        if not await self.engine.reset_symbol(symbol):
            return web.json_response({"error": f"No state for {symbol}"}, status=404)
        return web.json_response({"reset": symbol})
