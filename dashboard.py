#!/usr/bin/env python3
"""
DHT Observatory read-only HTTP API.

  GET /           health check
  GET /stats      live snapshot: node count, uptime, top info-hashes
  GET /nodes      historical node summary from the store
  GET /nodes/all  paginated node list (?page=&limit=)
  GET /nodes/top  most frequently seen nodes (?limit=)
"""

import logging
import threading
from datetime import datetime, timezone

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
from werkzeug.serving import make_server

from node_store import DEFAULT_PAGE_LIMIT, DEFAULT_TOP_LIMIT

logger = logging.getLogger(__name__)


def timestamp():
    return datetime.now(timezone.utc).isoformat()


def create_app(ctx) -> Flask:
    """Build the API over an observatory context (needs ``ctx.aggregator`` and ``ctx.store``)."""
    app = Flask(__name__)
    CORS(app)

    @app.route('/')
    def health():
        return jsonify({"status": "ok", "uptime": ctx.aggregator.snapshot.uptime})

    @app.route('/stats')
    def stats():
        snap = ctx.aggregator.snapshot
        return jsonify({
            "status": "ok",
            "timestamp": timestamp(),
            "metrics": snap.to_dict(),
            "topInfohashes": [{"hash": h, "count": c} for h, c in snap.top_ranked_items],
        })

    @app.route('/nodes')
    def nodes_summary():
        node_stats = ctx.store.aggregate_stats()
        if node_stats is None:
            return jsonify({"error": "No data available"}), 404
        return jsonify({"status": "ok", "timestamp": timestamp(), "stats": node_stats.to_dict()})

    @app.route('/nodes/all')
    def nodes_all():
        result = ctx.store.paginated_list(request.args.get('page', 1),
                                          request.args.get('limit', DEFAULT_PAGE_LIMIT))
        if result is None:
            return jsonify({"error": "No nodes found"}), 404
        return jsonify({
            "status": "ok",
            "timestamp": timestamp(),
            "data": [n.to_dict() for n in result.nodes],
            "pagination": result.pagination(),
        })

    @app.route('/nodes/top')
    def nodes_top():
        rows = ctx.store.top_nodes(request.args.get('limit', DEFAULT_TOP_LIMIT))
        if rows is None:
            return jsonify({"error": "No nodes found"}), 404
        return jsonify({"status": "ok", "timestamp": timestamp(), "data": [n.to_dict() for n in rows]})

    @app.errorhandler(Exception)
    def internal_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.name, "message": e.description}), e.code
        logger.exception(f"[!] Unhandled error in {request.path}")
        return jsonify({"error": "Internal server error", "message": str(e)}), 500

    return app


class ApiServer:
    """Runs the Flask app on a background thread so the event loop stays free."""

    def __init__(self, app: Flask, host: str, port: int):
        self.server = make_server(host, port, app, threaded=True)
        self.thread = threading.Thread(target=self.server.serve_forever, name="api", daemon=True)

    def start(self):
        self.thread.start()
        host, port = self.server.server_address[:2]
        logger.info(f"[*] API running on http://{host}:{port}")
        logger.info("    GET /  /stats  /nodes  /nodes/all  /nodes/top")

    def stop(self):
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=5)
