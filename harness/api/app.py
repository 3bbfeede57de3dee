# harness/api/app.py
from __future__ import annotations

from flask import Flask, current_app, jsonify, request

from harness.api.decorators import handle_harness_errors
from harness.registry.administrator import Administrator
from harness.registry.router import Router


def create_app(admin: Administrator) -> Flask:
    """
    REST boundary. Owns HTTP parsing only; every call is forwarded to the
    Administrator (lifecycle) or the Router (events / queries / training).
    Request bodies are handed over raw so malformed JSON is reported as a
    ValidationError, not as a Flask HTML page.
    """
    app = Flask(__name__)
    app.extensions["harness.admin"] = admin
    app.extensions["harness.router"] = Router(admin)
    _register_routes(app)
    return app


def _admin() -> Administrator:
    return current_app.extensions["harness.admin"]


def _router() -> Router:
    return current_app.extensions["harness.router"]


def _register_routes(app: Flask) -> None:

    # ------------------------------------------------------------
    # engine lifecycle
    # ------------------------------------------------------------
    @app.post("/engines")
    @handle_harness_errors
    def create_engine():
        engine_id = _admin().create(request.get_data())
        return jsonify({"engineId": engine_id, "status_url": f"/engines/{engine_id}"}), 201

    @app.get("/engines")
    @handle_harness_errors
    def list_engines():
        return jsonify({"engines": _admin().list()})

    @app.get("/engines/<engine_id>")
    @handle_harness_errors
    def get_engine(engine_id: str):
        return jsonify(_admin().status(engine_id))

    @app.post("/engines/<engine_id>")
    @handle_harness_errors
    def update_engine(engine_id: str):
        _admin().update(engine_id, request.get_data())
        return jsonify({"engineId": engine_id, "updated": True})

    @app.delete("/engines/<engine_id>")
    @handle_harness_errors
    def destroy_engine(engine_id: str):
        _admin().destroy(engine_id)
        return jsonify({"engineId": engine_id, "destroyed": True})

    # ------------------------------------------------------------
    # routed calls
    # ------------------------------------------------------------
    @app.post("/engines/<engine_id>/events")
    @handle_harness_errors
    def post_event(engine_id: str):
        return jsonify(_router().input(engine_id, request.get_data())), 201

    @app.post("/engines/<engine_id>/queries")
    @handle_harness_errors
    def post_query(engine_id: str):
        return jsonify(_router().query(engine_id, request.get_data()))

    @app.post("/engines/<engine_id>/train")
    @handle_harness_errors
    def train_engine(engine_id: str):
        return jsonify(_router().train(engine_id)), 202

    @app.post("/engines/<engine_id>/replay")
    @handle_harness_errors
    def replay_engine(engine_id: str):
        body = request.get_json(silent=True) or {}
        source = body.get("source") or engine_id
        return jsonify(_router().replay(source, engine_id))

    @app.get("/health")
    def health():
        admin = _admin()
        return jsonify({
            "ok": True,
            "engines": len(admin.ids()),
            "failedRestores": admin.failed_restores,
        })
