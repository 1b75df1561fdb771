# ratchet/bot_manager.py
import asyncio
import logging
from typing import Callable, Dict, List, Set

from ratchet.config import config
from ratchet.datastructures import CloseSignal, TradeSignal, WalletContext
from ratchet.exchange_connector import create_exchange
from ratchet.fill_dispatcher import FillDispatcher
from ratchet.flattener import flatten
from ratchet.order_executor import ExecutionCoordinator


class WalletRuntime:
    """Everything one wallet owns: its exchange handle, order stream and dispatcher."""
    def __init__(self, wallet: WalletContext, exchange_factory: Callable = create_exchange, callback_rate=None):
        self.wallet = wallet
        self.fill_queue: asyncio.Queue = asyncio.Queue()
        self.exchange = exchange_factory(wallet, self.fill_queue)
        self.dispatcher = FillDispatcher(self.fill_queue, wallet.name)
        self.coordinator = ExecutionCoordinator(wallet, self.exchange, self.dispatcher, callback_rate)
        self.tasks: Set[asyncio.Task] = set()

    def start(self):
        for coro in (self.exchange.run(), self.dispatcher.run()):
            task = asyncio.create_task(coro)
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)


class BotManager:
    """
    Fans every signal out to all wallets concurrently and keeps track of the
    position monitors they spawn.
    """
    def __init__(self, wallets: List[WalletContext], exchange_factory: Callable = create_exchange,
                 callback_rate=None):
        self.runtimes: Dict[str, WalletRuntime] = {
            w.name: WalletRuntime(w, exchange_factory, callback_rate) for w in wallets
        }
        self._signal_tasks: Set[asyncio.Task] = set()

    def start(self):
        logging.info(f"BOT MANAGER: Starting order streams for {len(self.runtimes)} wallet(s).")
        for runtime in self.runtimes.values():
            runtime.start()

    async def handle_signal(self, signal) -> list:
        """Runs the signal against every wallet; one wallet's failure never touches another."""
        runtimes = list(self.runtimes.values())
        if isinstance(signal, TradeSignal):
            logging.info(f"Trade signal {signal.direction} {signal.pair} -> {len(runtimes)} wallet(s)")
            if config.MODE != 'LIVE':
                for runtime in runtimes:
                    runtime.exchange.seed_price(signal.pair, signal.entry_price)
            coros = [r.coordinator.execute(signal) for r in runtimes]
        elif isinstance(signal, CloseSignal):
            logging.info(f"Close signal detected for {signal.pair} {signal.direction or ''}")
            coros = [flatten(signal, r.exchange, r.wallet.name) for r in runtimes]
        else:
            logging.warning(f"Unhandled message type {type(signal).__name__}. Ignoring.")
            return []

        results = await asyncio.gather(*coros, return_exceptions=True)
        for runtime, result in zip(runtimes, results):
            if isinstance(result, Exception):
                logging.error(f"[{runtime.wallet.name}] Error handling {signal}: {result}", exc_info=result)
        return results

    def monitors(self) -> list:
        return [m for r in self.runtimes.values() for m in r.dispatcher.active_monitors()]

    def positions(self) -> List[dict]:
        return [m.describe() for m in self.monitors()]

    async def run(self, signal_queue: asyncio.Queue):
        """Consumes signals; each one is handled as its own task."""
        logging.info("BotManager is waiting for signals.")
        while True:
            signal = await signal_queue.get()
            task = asyncio.create_task(self.handle_signal(signal))
            self._signal_tasks.add(task)
            task.add_done_callback(self._signal_tasks.discard)
            signal_queue.task_done()

    async def stop(self):
        """Abandons live monitors and cancels every wallet task."""
        logging.info("BOT MANAGER: Stopping all wallets.")
        for monitor in self.monitors():
            monitor.abandon("bot shutting down")
        tasks = set(self._signal_tasks)
        for runtime in self.runtimes.values():
            tasks |= runtime.tasks
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logging.info("BOT MANAGER: All wallets stopped.")
