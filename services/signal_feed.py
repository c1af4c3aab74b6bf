"""
SignalFeed - Account Snapshot + Signal Dispatch

Takes a fresh account snapshot for every signal and hands both to the
PyramidEngine. Also replays JSON-lines signal files: signals for one
symbol run in file order, different symbols run concurrently.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Dict, List

from core.errors import ExchangeError
from core.position_sizer import PositionSizer
from core.state import SignalResult, TradingSignal

logger = logging.getLogger(__name__)


class SignalFeed:
    """
    Args:
        engine: PyramidEngine
        guard: ExecutionGuard for account snapshots
        sizer: PositionSizer (builds AccountMetrics)
        max_allowed_leverage: Account leverage ceiling reported in metrics
    """

    def __init__(self, engine, guard, sizer: PositionSizer, max_allowed_leverage: float = 10.0):
        self.engine = engine
        self.guard = guard
        self.sizer = sizer
        self.max_allowed_leverage = max_allowed_leverage

        # Stats
        self.processed = 0
        self.accepted = 0
        self.rejected = 0

    async def submit(self, signal: TradingSignal) -> SignalResult:
        """Snapshot the account and process one signal."""
        try:
            account_value, positions = await self.guard.fetch_account_snapshot()
        except ExchangeError as e:
            logger.error(f"❌ Account snapshot failed for {signal.symbol} signal: {e}")
            self.processed += 1
            self.rejected += 1
            return SignalResult(success=False, reason=str(e), error_kind="external")

        metrics = self.sizer.build_account_metrics(account_value, positions, self.max_allowed_leverage)
        result = await self.engine.process_signal(signal, metrics)

        self.processed += 1
        if result.success:
            self.accepted += 1
            logger.info(f"✅ {signal.action.upper()} {signal.symbol}: {result.reason}")
        else:
            self.rejected += 1
            logger.info(f"🚫 {signal.action.upper()} {signal.symbol} rejected ({result.error_kind}): {result.reason}")
        return result

    async def submit_payload(self, payload: Dict) -> SignalResult:
        """Decode a webhook-style dict and submit it."""
        try:
            signal = TradingSignal.from_dict(payload)
        except (TypeError, ValueError) as e:
            self.processed += 1
            self.rejected += 1
            return SignalResult(success=False, reason=f"Invalid signal: {e}", error_kind="validation")
        return await self.submit(signal)

    @staticmethod
    def load_signals(path: str) -> List[TradingSignal]:
        """Read a JSON-lines file. Malformed lines are logged and skipped."""
        signals = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    signals.append(TradingSignal.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError) as e:
                    logger.warning(f"⚠️ {path}:{lineno} skipped: {e}")
        return signals

    async def replay(self, path: str) -> List[SignalResult]:
        """
        Replay a signal file.

        Returns:
            Results in file order
        """
        signals = self.load_signals(path)
        logger.info(f"📂 Replaying {len(signals)} signals from {path}")

        by_symbol: "OrderedDict[str, List[int]]" = OrderedDict()
        for idx, signal in enumerate(signals):
            by_symbol.setdefault(signal.symbol, []).append(idx)

        results: List[SignalResult] = [None] * len(signals)

        async def _run_symbol(indices: List[int]):
            for idx in indices:
                results[idx] = await self.submit(signals[idx])

        await asyncio.gather(*(_run_symbol(indices) for indices in by_symbol.values()))

        ok = sum(1 for r in results if r.success)
        logger.info(f"📊 Replay done: {ok}/{len(results)} accepted")
        return results
