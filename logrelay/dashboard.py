"""Flask status endpoint: relay counters, tailing position and the last cycle."""

from dataclasses import asdict

from flask import Flask, jsonify

from logrelay.offset_store import OffsetStore
from logrelay.relay import Relay


def create_dashboard_app(relay: Relay, store: OffsetStore) -> Flask:
    app = Flask(__name__)

    @app.route("/stats")
    def stats():
        offset = store.current
        last_cycle = relay.last_stats
        snap = relay.metrics.snapshot()
        snap["source"] = {
            "url": relay.source_url,
            "last_file": offset.source_id,
            "last_position": offset.byte_position,
        }
        snap["last_cycle_stats"] = asdict(last_cycle) if last_cycle is not None else None
        snap["failures"] = {
            "total": relay.failures.total,
            "recent": relay.failures.get_recent(10),
        }
        return jsonify(snap)

    @app.route("/health")
    def health():
        return jsonify(status="ok", source=relay.source_url)

    return app


def run_dashboard(app: Flask, port: int):
    """Serve the status app; blocks, so run it in a daemon thread."""
    app.run(host="0.0.0.0", port=port, use_reloader=False)
