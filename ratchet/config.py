# ratchet/config.py
import json
import os
from dotenv import load_dotenv
import logging

# Load environment variables from a .env file for local development
load_dotenv()


def _json_env(name: str, default):
    raw = os.getenv(name, '').strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logging.warning(f"{name} is not valid JSON; ignoring it.")
        return default


class Config:
    """Main configuration class loading settings from environment variables."""
    # --- Exchange Credentials (single-wallet fallback) ---
    API_KEY = os.getenv('BYBIT_API_KEY')
    API_SECRET = os.getenv('BYBIT_API_SECRET')

    # --- Wallets ---
    # JSON list: [{"name": "main", "api_key": "...", "api_secret": "...", "balance": 10, "leverage": 20}]
    WALLETS = _json_env('WALLETS', [])
    WALLET_BALANCE = float(os.getenv('WALLET_BALANCE', 10.0))
    WALLET_LEVERAGE = int(os.getenv('WALLET_LEVERAGE', 10))

    # --- Bot Mode ---
    # Set to 'LIVE' to use real exchange connections
    MODE = os.getenv('MODE', 'SIMULATION')
    TESTNET = os.getenv('TESTNET', 'true').lower() in ('1', 'true', 'yes')

    # --- Endpoints ---
    CATEGORY = os.getenv('CATEGORY', 'linear')
    PRIVATE_WS_URL = os.getenv(
        'PRIVATE_WS_URL',
        "wss://stream-testnet.bybit.com/v5/private" if TESTNET else "wss://stream.bybit.com/v5/private"
    )

    # --- Ladder Parameters ---
    # Trail offset of the last leg, as a percentage of price
    TRAILING_CALLBACK_RATE = float(os.getenv('TRAILING_CALLBACK_RATE', 0.2))

    # --- Simulation ---
    SIM_TICK_SECONDS = float(os.getenv('SIM_TICK_SECONDS', 0.5))
    SIM_VOLATILITY = float(os.getenv('SIM_VOLATILITY', 0.001))
    SIM_START_PRICES = _json_env('SIM_START_PRICES', {})

    # --- Control surface ---
    HTTP_HOST = os.getenv('HTTP_HOST', '127.0.0.1')
    HTTP_PORT = int(os.getenv('HTTP_PORT', 8080))
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # --- Validation ---
    if MODE == 'LIVE' and not WALLETS and (not API_KEY or not API_SECRET):
        logging.warning("LIVE mode but neither WALLETS nor BYBIT_API_KEY/BYBIT_API_SECRET are set.")

config = Config()
