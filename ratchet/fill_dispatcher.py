# ratchet/fill_dispatcher.py
import asyncio
import logging
from typing import Dict, List, Set

from ratchet.datastructures import FillNotification


class FillDispatcher:
    """
    Single consumer of one wallet's order stream.
    Position monitors register by symbol; every notification is handed to the
    monitors of its symbol as a separate task so one stalled position never
    holds up the others.
    """
    def __init__(self, input_queue: asyncio.Queue, wallet_name: str = ""):
        self.input_queue = input_queue
        self.wallet_name = wallet_name
        self.monitors: Dict[str, List] = {}
        self._inflight: Set[asyncio.Task] = set()

    def register(self, monitor):
        logging.info(f"[{self.wallet_name}] DISPATCHER: Registering monitor for {monitor.symbol}")
        self.monitors.setdefault(monitor.symbol, []).append(monitor)

    def unregister(self, monitor):
        """Safe to call more than once for the same monitor."""
        registered = self.monitors.get(monitor.symbol, [])
        if monitor in registered:
            registered.remove(monitor)
            logging.info(f"[{self.wallet_name}] DISPATCHER: Deregistered monitor for {monitor.symbol}")
        if not registered:
            self.monitors.pop(monitor.symbol, None)

    def active_monitors(self) -> List:
        return [m for monitors in self.monitors.values() for m in monitors]

    def dispatch(self, notification: FillNotification) -> List[asyncio.Task]:
        tasks = []
        for monitor in list(self.monitors.get(notification.symbol, [])):
            task = asyncio.create_task(monitor.handle(notification))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)
        return tasks

    async def drain(self):
        """Processes everything queued so far and waits for the handlers to finish."""
        while True:
            while not self.input_queue.empty():
                self.dispatch(self.input_queue.get_nowait())
                self.input_queue.task_done()
            pending = [t for t in self._inflight if not t.done()]
            if not pending:
                return
            # handlers may queue new notifications (cancels, replacements)
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self):
        """Main loop: consume notifications and route them by symbol."""
        logging.info(f"[{self.wallet_name}] FillDispatcher is running.")
        while True:
            notification: FillNotification = await self.input_queue.get()
            try:
                self.dispatch(notification)
            except Exception:
                logging.critical(f"[{self.wallet_name}] Failed to dispatch {notification}", exc_info=True)
            finally:
                self.input_queue.task_done()
