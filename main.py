#!/usr/bin/env python3
"""
Pyramid Trading Bot - Main Entry Point

Margin-aware pyramid trader for Hyperliquid perps.
Implements:
- Exchange state reconciliation at startup
- Per-symbol pyramid entries and staged exits
- Periodic margin safety monitor with automatic de-risking
- Status API and Discord notifications
"""

import asyncio
import signal
import sys
import argparse
import logging

import config
from core.errors import ConfigError, ExchangeError
from core.execution_guard import ExecutionGuard
from core.leverage_manager import LeverageManager
from core.margin_monitor import MarginMonitor
from core.position_sizer import PositionSizer
from core.pyramid_engine import PyramidEngine
from core.settings import LeverageConfig, MonitorConfig, PyramidConfig
from services.signal_feed import SignalFeed
from services.status_server import StatusServer
from utils.hyperliquid_client import HyperliquidClient
from utils.notifier import get_notifier
from utils.panic_switch import PanicSwitch

logger = logging.getLogger(__name__)


def setup_logging(debug: bool = False):
    """Configure stdout + file logging."""
    level = logging.DEBUG if debug else getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_FILE)
        ]
    )


def print_banner():
    """Print startup banner."""
    banner = """
    ╔═══════════════════════════════════════════════════════════════╗
    ║                                                               ║
    ║   🔺 PYRAMID BOT - Margin-Aware Pyramid Trader               ║
    ║                                                               ║
    ║   Strategy: Scale in on trend, scale out on reversal         ║
    ║   Platform: Hyperliquid Perps                                 ║
    ║                                                               ║
    ╚═══════════════════════════════════════════════════════════════╝
    """
    print(banner)


class Bot:
    """Wires the client, guard, engine, monitor and services together."""

    def __init__(self, dry_run: bool = True, port: int = None):
        self.pyramid_config = PyramidConfig.from_config(config)
        self.monitor_config = MonitorConfig.from_config(config)
        self.leverage_config = LeverageConfig.from_config(config, ceiling=self.monitor_config.safe_leverage_ceiling)

        self.client = HyperliquidClient(
            config.PRIVATE_KEY,
            config.ACCOUNT_ADDRESS,
            testnet=config.IS_TESTNET,
            market_slippage=config.MARKET_SLIPPAGE,
        )
        self.notifier = get_notifier(config.DISCORD_WEBHOOK_URL)
        self.guard = ExecutionGuard(self.client, dry_run=dry_run, timeout=config.EXCHANGE_TIMEOUT_SECONDS)
        self.sizer = PositionSizer(max_leverage=self.pyramid_config.max_leverage)
        self.engine = PyramidEngine(self.guard, self.sizer, self.pyramid_config, notifier=self.notifier)
        self.leverage_manager = LeverageManager(self.guard, self.sizer, self.leverage_config)
        self.monitor = MarginMonitor(self.guard, self.sizer, self.notifier,
                                     self.leverage_manager, self.monitor_config)
        self.feed = SignalFeed(self.engine, self.guard, self.sizer,
                               self.monitor_config.max_allowed_leverage)
        self.panic = PanicSwitch(self.guard, self.engine, self.notifier)
        self.status_server = StatusServer(self.engine, self.monitor, self.notifier,
                                          host=config.STATUS_HOST, port=port or config.STATUS_PORT)
        self.dry_run = dry_run

    async def reconcile(self) -> bool:
        """
        CRITICAL: Sync pyramid state with exchange on startup.

        Rule 0: Trust the API, not local state.
        """
        logger.info("🔄 Reconciling state with exchange...")
        try:
            account_value, positions = await self.guard.fetch_account_snapshot()
        except ExchangeError as e:
            logger.error(f"❌ Reconciliation failed: {e}")
            return False

        adopted = self.engine.reconcile(positions)
        logger.info("✅ Reconciliation complete:")
        logger.info(f"   Account Value: ${account_value:.2f}")
        logger.info(f"   Positions: {adopted}")
        return True

    async def check(self):
        """One margin health check, report only."""
        status = await self.monitor.check_margin_health(dispatch=False)
        print(f"📊 Margin ratio:   {status.margin_ratio:.1%}")
        print(f"   Leverage ratio: {status.leverage_ratio:.2f}x")
        print(f"   Account value:  ${status.account_value:.2f}")
        print(f"   Margin used:    ${status.total_margin_used:.2f}")
        print(f"   Healthy:        {status.is_healthy}")
        for alert in status.alerts:
            print(f"   [{alert.level.value.upper()}] {alert.message}")

    async def close_all(self):
        positions = await self.guard.get_positions()
        if not positions:
            logger.info("No positions to close.")
            return True

        logger.warning(f"Found {len(positions)} positions:")
        for pos in positions:
            logger.warning(f"  - {pos.symbol}: {pos.size} @ {pos.entry_price}")

        confirm = input("\n⚠️  Type 'CLOSE ALL' to actually close these positions: ")
        if confirm != "CLOSE ALL":
            logger.info("Aborted. No positions were closed.")
            return True

        logger.critical("🚨 EXECUTING PANIC CLOSE...")
        success = await self.panic.close_all("Operator request")
        if success:
            logger.info("✅ All positions closed successfully")
        else:
            logger.error("❌ Some positions failed to close!")
        await self.notifier.drain()
        return success

    async def run(self, signals_path: str = None):
        """Run the bot until SIGINT/SIGTERM."""
        if self.dry_run:
            logger.warning("📝 DRY RUN MODE - Not executing real trades")

        # CRITICAL: Reconcile before anything else
        if not await self.reconcile():
            logger.critical("Reconciliation failed - refusing to start")
            return

        await self.monitor.start()
        await self.status_server.start()

        shutdown_event = asyncio.Event()

        def signal_handler():
            logger.info("🛑 Shutdown signal received...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        logger.info("🚀 Bot started!")
        logger.info(f"   Pyramid: {config.PYRAMID_STYLE} {list(self.pyramid_config.level_margin_pcts)}")
        logger.info(f"   Max Levels: {self.pyramid_config.max_levels}")
        logger.info(f"   Dry Run: {self.dry_run}")

        self.notifier.startup(
            wallet=self.client.address,
            mode="DRY RUN" if self.dry_run else "LIVE",
            style=config.PYRAMID_STYLE,
        )

        reason = "Manual"
        try:
            if signals_path:
                await self.feed.replay(signals_path)
            await shutdown_event.wait()
        except Exception as e:
            logger.error(f"Error in main loop: {e}")
            self.notifier.error("MainLoop", str(e), fatal=True)
            reason = "Fatal error"
        finally:
            logger.info("Shutting down...")
            await self.monitor.stop()
            await self.status_server.stop()
            self.notifier.shutdown(reason)
            await self.notifier.drain()
            logger.info("✅ Shutdown complete")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Margin-aware pyramid trading bot for Hyperliquid"
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Enable live trading (disables dry_run)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--signals",
        metavar="FILE",
        default=None,
        help="Replay signals from a JSON-lines file"
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Run one margin health check and exit (no actions)"
    )
    parser.add_argument(
        "--close-all",
        action="store_true",
        help="Panic switch: close every open position"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Status API port (overrides config)"
    )

    args = parser.parse_args()
    setup_logging(args.debug)

    print_banner()

    dry_run = config.DRY_RUN and not args.live
    print("📋 Configuration:")
    print(f"   Wallet: {config.ACCOUNT_ADDRESS[:10]}...{config.ACCOUNT_ADDRESS[-8:] if config.ACCOUNT_ADDRESS else 'NOT SET'}")
    print(f"   Network: {'TESTNET' if config.IS_TESTNET else 'MAINNET'}")
    print(f"   Mode: {'DRY RUN' if dry_run else 'LIVE'}")
    print(f"   Pyramid: {config.PYRAMID_STYLE} {config.PYRAMID_MARGIN_PERCENTAGES}")
    print()

    # Validate credentials
    if not config.PRIVATE_KEY:
        print("❌ ERROR: Missing credentials!")
        print("   Set HL_PRIVATE_KEY (and HL_ACCOUNT_ADDRESS) in .env file")
        sys.exit(1)

    try:
        bot = Bot(dry_run=dry_run, port=args.port)

        if args.check:
            asyncio.run(bot.check())
            return

        if args.close_all:
            # Panic closes are always real
            bot.guard.dry_run = False
            ok = asyncio.run(bot.close_all())
            sys.exit(0 if ok else 1)

        # Normal operation
        if not dry_run:
            print("⚠️  WARNING: Live trading mode!")
            print("    Press Ctrl+C within 5 seconds to cancel...")
            import time
            time.sleep(5)

        asyncio.run(bot.run(signals_path=args.signals))

    except KeyboardInterrupt:
        print("\n\n🛑 Bot stopped by user")
    except ConfigError as e:
        logger.critical(f"❌ Invalid configuration: {e}")
        sys.exit(1)
    except ExchangeError as e:
        logger.critical(f"❌ Exchange unavailable: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
