# app.py
import asyncio
import logging
import threading
from flask import Flask, jsonify, request

# Import the bot's main coroutine and setup function
from main import main as run_bot_main
from ratchet.bot_manager import BotManager
from ratchet.config import config
from ratchet.datastructures import signal_from_dict
from ratchet.errors import ValidationError
from ratchet.logger import setup_logging
from ratchet.wallets import list_wallets

# Configure logging
setup_logging()

# --- Flask App Initialization ---
app = Flask(__name__)

# The bot lives on its own event loop in a background thread;
# request handlers hand work to it thread-safely.
bot_loop = None
bot_future = None
bot_manager = None
signal_queue = None


def _ensure_loop():
    global bot_loop
    if bot_loop is None:
        bot_loop = asyncio.new_event_loop()
        threading.Thread(target=bot_loop.run_forever, name="ratchet-loop", daemon=True).start()
    return bot_loop


async def _boot():
    global bot_manager, signal_queue
    signal_queue = asyncio.Queue()
    bot_manager = BotManager(list_wallets())
    await run_bot_main(signal_queue, bot_manager)


def _running() -> bool:
    return bot_future is not None and not bot_future.done()


def launch_bot() -> bool:
    """Starts the bot unless it is already running."""
    global bot_future
    if _running():
        return False
    logging.info("Launching bot as a background task...")
    bot_future = asyncio.run_coroutine_threadsafe(_boot(), _ensure_loop())
    return True


@app.route('/status', methods=['GET'])
def status():
    """Endpoint to check the status of the bot task."""
    if bot_future is None:
        return jsonify({"status": "not_started", "mode": config.MODE}), 200
    if not bot_future.done():
        return jsonify({"status": "running", "mode": config.MODE}), 200
    if bot_future.cancelled():
        return jsonify({"status": "stopped"}), 200
    exception = bot_future.exception()
    if exception:
        logging.error(f"Bot task finished with an exception: {exception}")
        return jsonify({"status": "crashed", "error": str(exception)}), 500
    return jsonify({"status": "stopped"}), 200


@app.route('/positions', methods=['GET'])
def positions():
    """Live position monitors across all wallets."""
    if not _running() or bot_manager is None:
        return jsonify({"positions": []}), 200

    async def _snapshot():
        return bot_manager.positions()

    snapshot = asyncio.run_coroutine_threadsafe(_snapshot(), bot_loop).result(timeout=5)
    return jsonify({"positions": snapshot}), 200


@app.route('/signals', methods=['POST'])
def submit_signal():
    """Queues an already-structured TradeSignal/CloseSignal JSON payload."""
    try:
        parsed = signal_from_dict(request.get_json(silent=True))
    except ValidationError as e:
        return jsonify({"status": "rejected", "error": str(e)}), 400
    if not _running() or signal_queue is None:
        return jsonify({"status": "not_running"}), 503
    bot_loop.call_soon_threadsafe(signal_queue.put_nowait, parsed)
    return jsonify({"status": "queued", "pair": parsed.pair, "type": type(parsed).__name__}), 202


@app.route('/start', methods=['POST'])
def start_bot():
    """Endpoint to manually start the bot if it was stopped."""
    if launch_bot():
        return jsonify({"status": "started"}), 201
    return jsonify({"status": "already_running"}), 409


@app.route('/stop', methods=['POST'])
def stop_bot():
    """Endpoint to gracefully stop the bot."""
    if not _running():
        return jsonify({"status": "not_running"}), 404
    logging.info("Received /stop command. Stopping bot...")
    bot_future.cancel()
    return jsonify({"status": "stopping"}), 200


if __name__ == '__main__':
    launch_bot()
    app.run(host=config.HTTP_HOST, port=config.HTTP_PORT)
