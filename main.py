# main.py
import asyncio
import json
import logging
import signal
import sys
from typing import Set

from ratchet.logger import setup_logging
from ratchet.config import config
from ratchet.bot_manager import BotManager
from ratchet.datastructures import signal_from_dict
from ratchet.errors import ValidationError
from ratchet.wallets import list_wallets

running_tasks: Set[asyncio.Task] = set()

def handle_shutdown(sig):
    logging.info(f"Received shutdown signal {sig.name}. Stopping wallets...")
    for task in running_tasks:
        task.cancel()

async def read_stdin_signals(signal_queue: asyncio.Queue):
    """Feeds newline-delimited JSON signals from stdin into the signal queue."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            logging.info("stdin closed; no further signals will be read from it.")
            return
        line = line.strip()
        if not line:
            continue
        try:
            await signal_queue.put(signal_from_dict(json.loads(line)))
        except (ValueError, ValidationError) as e:
            logging.error(f"Signal could not be parsed. Ignoring. ({e})")

async def main(signal_queue: asyncio.Queue = None, bot_manager: BotManager = None,
               read_stdin: bool = False, install_signal_handlers: bool = False):
    setup_logging()
    logging.info(f"Initializing Ratchet in {config.MODE} mode...")

    signal_queue = signal_queue or asyncio.Queue()
    bot_manager = bot_manager or BotManager(list_wallets())
    bot_manager.start()

    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handle_shutdown, sig)

    # --- Create and Track Core Service Tasks ---
    tasks_to_run = [bot_manager.run(signal_queue)]
    if read_stdin:
        tasks_to_run.append(read_stdin_signals(signal_queue))

    for coro in tasks_to_run:
        task = asyncio.create_task(coro)
        running_tasks.add(task)
        task.add_done_callback(running_tasks.discard)

    logging.info(f"Starting {len(running_tasks)} core service tasks...")

    try:
        await asyncio.gather(*running_tasks)
    except asyncio.CancelledError:
        logging.info("Main task group cancelled. Bot is shutting down.")
    finally:
        await bot_manager.stop()

if __name__ == "__main__":
    # Local script entry point: signals arrive as JSON lines on stdin.
    # For the HTTP control surface, run app.py instead.
    try:
        asyncio.run(main(read_stdin=True, install_signal_handlers=True))
    finally:
        logging.info("Bot shutdown complete.")
