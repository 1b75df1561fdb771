# ratchet/wallets.py
import logging
from typing import List

from ratchet.config import config
from ratchet.datastructures import WalletContext
from ratchet.errors import ValidationError


def list_wallets() -> List[WalletContext]:
    """
    Every account to execute against.
    Reads the WALLETS JSON list; falls back to one wallet built from
    BYBIT_API_KEY/BYBIT_API_SECRET, WALLET_BALANCE and WALLET_LEVERAGE.
    """
    wallets = []
    for i, entry in enumerate(config.WALLETS or []):
        try:
            wallets.append(WalletContext(
                name=entry.get('name') or f"wallet-{i + 1}",
                api_key=entry.get('api_key', ''),
                api_secret=entry.get('api_secret', ''),
                balance=entry.get('balance', config.WALLET_BALANCE),
                leverage=entry.get('leverage', config.WALLET_LEVERAGE),
            ))
        except (ValidationError, AttributeError, TypeError, ValueError) as e:
            logging.error(f"Skipping wallet #{i + 1} from WALLETS: {e}")
    if wallets:
        return wallets

    if config.MODE == 'LIVE' and (not config.API_KEY or not config.API_SECRET):
        raise ValidationError("Missing Bybit API key or secret in the environment.")
    return [WalletContext(
        name="default",
        api_key=config.API_KEY or '',
        api_secret=config.API_SECRET or '',
        balance=config.WALLET_BALANCE,
        leverage=config.WALLET_LEVERAGE,
    )]
