"""
Configuration for the Pyramid Trading Bot

Every setting is read from the environment (or a .env file) with a safe default.

SECURITY: Never hardcode private keys! Use .env file or environment variables.
"""

import os

# Try to load .env file
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_list(name: str, default):
    raw = os.getenv(name, "")
    if not raw.strip():
        return list(default)
    return [float(part) for part in raw.split(",") if part.strip()]


# ======== API CREDENTIALS (from environment) ========
PRIVATE_KEY = os.getenv("HL_PRIVATE_KEY", "")
ACCOUNT_ADDRESS = os.getenv("HL_ACCOUNT_ADDRESS", "")
IS_TESTNET = _env_bool("HL_TESTNET", False)

# ======== PYRAMID STRATEGY ========
# Margin percentages per level (% of account value used as margin)
PYRAMID_PRESETS = {
    "conservative": [5, 10, 15, 20],   # Total: 50% of account
    "moderate": [10, 15, 20, 25],      # Total: 70% of account
    "aggressive": [15, 20, 25, 30],    # Total: 90% of account
}
PYRAMID_STYLE = os.getenv("PYRAMID_STYLE", "moderate")

MAX_PYRAMID_LEVELS = int(os.getenv("MAX_PYRAMID_LEVELS", "4"))

PYRAMID_MARGIN_PERCENTAGES = _env_list(
    "PYRAMID_MARGIN_PERCENTAGES",
    PYRAMID_PRESETS.get(PYRAMID_STYLE, PYRAMID_PRESETS["moderate"]),
)

# Target leverage per level
PYRAMID_LEVERAGE_LEVELS = _env_list("PYRAMID_LEVERAGE_LEVELS", [5] * MAX_PYRAMID_LEVELS)

# First opposite signal sells 50%, the next one closes the rest
PYRAMID_EXIT_PERCENTAGES = _env_list("PYRAMID_EXIT_PERCENTAGES", [50, 100])

ENABLE_SHORTS = _env_bool("ENABLE_SHORTS", True)

# ======== SIZING / RISK ========
# Never commit more than this fraction of the account as margin
MAX_ACCOUNT_EXPOSURE = float(os.getenv("MAX_ACCOUNT_EXPOSURE", "0.70"))

# Use only 95% of free margin
MARGIN_SAFETY_BUFFER = float(os.getenv("MARGIN_SAFETY_BUFFER", "0.95"))

MIN_ORDER_SIZE = float(os.getenv("MIN_ORDER_SIZE", "0.01"))
MAX_LEVERAGE = float(os.getenv("MAX_LEVERAGE", "50"))
MIN_ACCOUNT_BALANCE = float(os.getenv("MIN_ACCOUNT_BALANCE", "100"))
WARNING_MARGIN_RATIO = float(os.getenv("WARNING_MARGIN_RATIO", "0.8"))

# Entry orders are IOC limits this far through the signal price
ENTRY_PRICE_BUFFER = float(os.getenv("ENTRY_PRICE_BUFFER", "0.001"))

# Size decimals per coin when the exchange meta is not available
SIZE_DECIMALS = {"SOL": 2}
DEFAULT_SIZE_DECIMALS = int(os.getenv("DEFAULT_SIZE_DECIMALS", "4"))

# ======== MARGIN MONITOR ========
MONITOR_INTERVAL_SECONDS = float(os.getenv("MONITOR_INTERVAL_SECONDS", "5"))

ALERT_INFO = float(os.getenv("ALERT_INFO", "0.50"))
ALERT_WARNING = float(os.getenv("ALERT_WARNING", "0.70"))
ALERT_CRITICAL = float(os.getenv("ALERT_CRITICAL", "0.85"))
ALERT_EMERGENCY = float(os.getenv("ALERT_EMERGENCY", "0.95"))

EMERGENCY_COOLDOWN_SECONDS = float(os.getenv("EMERGENCY_COOLDOWN_SECONDS", "300"))
CRITICAL_REDUCE_FRACTION = float(os.getenv("CRITICAL_REDUCE_FRACTION", "0.5"))
SAFE_LEVERAGE_CEILING = float(os.getenv("SAFE_LEVERAGE_CEILING", "5"))
MAX_ALLOWED_ACCOUNT_LEVERAGE = float(os.getenv("MAX_ALLOWED_ACCOUNT_LEVERAGE", "10"))
ALERT_HISTORY_SIZE = int(os.getenv("ALERT_HISTORY_SIZE", "100"))

# ======== LEVERAGE MANAGER ========
BASE_LEVERAGE = float(os.getenv("BASE_LEVERAGE", "5"))
LEVERAGE_MARGIN_THRESHOLD = float(os.getenv("LEVERAGE_MARGIN_THRESHOLD", "0.7"))
LEVERAGE_ADJUST_COOLDOWN_SECONDS = float(os.getenv("LEVERAGE_ADJUST_COOLDOWN_SECONDS", "60"))
DEFAULT_VOLATILITY = float(os.getenv("DEFAULT_VOLATILITY", "0.02"))

# ======== EXECUTION ========
EXCHANGE_TIMEOUT_SECONDS = float(os.getenv("EXCHANGE_TIMEOUT_SECONDS", "10"))

# Market orders are aggressive IOC limits this far through the mid
MARKET_SLIPPAGE = float(os.getenv("MARKET_SLIPPAGE", "0.05"))

# Enable dry-run mode (no real trades) - DEFAULT TO SAFE!
DRY_RUN = _env_bool("DRY_RUN", True)

# ======== NOTIFICATIONS / STATUS ========
DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")
STATUS_HOST = os.getenv("STATUS_HOST", "0.0.0.0")
STATUS_PORT = int(os.getenv("STATUS_PORT", "8080"))

# ======== BOT SETTINGS ========
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "pyramid_bot.log")
