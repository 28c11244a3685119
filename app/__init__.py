from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, request
from flask_cors import CORS

from config import Config
from db import Base, init_engine
from utils import err, now_monotonic


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)
    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    # Multipart overhead on top of the largest accepted document.
    app.config["MAX_CONTENT_LENGTH"] = cfg.MAX_UPLOAD_BYTES + 1024 * 1024

    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Session-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Content-Disposition"],
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    )

    from app.routes.api import rest_api
    from app.routes.core import core_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(rest_api)

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("VALIDATION_ERROR", f"Method {request.method} not allowed for {request.path}", http_status=405)

    @app.errorhandler(413)
    def too_large(_e):
        limit_mb = cfg.MAX_UPLOAD_BYTES // (1024 * 1024)
        return err("VALIDATION_ERROR", f"File too large (max {limit_mb}MB)", http_status=413)

    logging.getLogger("api").info("app ready env=%s version=%s", cfg.APP_ENV, cfg.APP_VERSION)
    return app
