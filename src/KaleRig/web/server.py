import logging
import os
import secrets
import threading
import time
from typing import Optional

from flask import Flask, jsonify
from flask_socketio import SocketIO, emit

from .status import (
    build_snapshot,
    farmers_snapshot,
    get_performance,
    harvests_snapshot,
    update_performance_metrics,
)

BROADCAST_INTERVAL_SECS = 2

app = Flask(__name__)
# Use environment variable for SECRET_KEY or generate a random one
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET_KEY", secrets.token_hex(32))
cors_origins = os.environ.get(
    "CORS_ORIGINS", "http://localhost:3002,http://127.0.0.1:3002"
).split(",")
socketio = SocketIO(app, cors_allowed_origins=cors_origins)

# Global reference to the running farm
_farm = None


def set_farm(farm) -> None:
    global _farm
    _farm = farm


def _not_running():
    return jsonify({"error": "farm not running"}), 503


@app.route("/data")
def block_data():
    if _farm is None:
        return _not_running()
    return jsonify(_farm.block_state.snapshot())


@app.route("/balances")
def balances():
    if _farm is None:
        return _not_running()
    return jsonify(dict(_farm.ledger.balances))


@app.route("/farmers")
def farmers():
    if _farm is None:
        return _not_running()
    return jsonify(farmers_snapshot(_farm))


@app.route("/session")
def session():
    if _farm is None:
        return _not_running()
    data = _farm.session.snapshot()
    data.update(get_performance())
    return jsonify(data)


@app.route("/harvests")
def harvests():
    if _farm is None:
        return _not_running()
    return jsonify(harvests_snapshot(_farm))


@app.route("/status")
def status():
    if _farm is None:
        return _not_running()
    return jsonify(build_snapshot(_farm))


@socketio.on("connect")
def handle_connect():
    if _farm is not None:
        emit("status", build_snapshot(_farm))


@socketio.on("get_status")
def handle_get_status():
    if _farm is not None:
        emit("status", build_snapshot(_farm))


# Global flag to control broadcast thread
_broadcast_running = False


def broadcast_status():
    global _broadcast_running
    _broadcast_running = True
    while _broadcast_running:
        try:
            update_performance_metrics()
            if _farm is not None:
                socketio.emit("status", build_snapshot(_farm))
        except Exception as e:
            logger = logging.getLogger("KaleRig.web")
            logger.error(f"Error in broadcast_status: {e}")
        time.sleep(BROADCAST_INTERVAL_SECS)


def stop_web_server():
    """Stop background threads for web server"""
    global _broadcast_running
    _broadcast_running = False


def start_web_server(host: str = "0.0.0.0", port: int = 3002, farm: Optional[object] = None):
    logger = logging.getLogger("KaleRig.web")
    if farm is not None:
        set_farm(farm)
    logger.info("Starting web server on %s:%s", host, port)
    threading.Thread(target=broadcast_status, daemon=True).start()
    try:
        socketio.run(app, host=host, port=port, allow_unsafe_werkzeug=True)
    finally:
        stop_web_server()
