from models.base import init_engine_and_session, Base
import os
import logging
from logging.handlers import RotatingFileHandler
from time import time

from flask import Flask, request, current_app, g, jsonify
from dotenv import load_dotenv
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from controllers.payments import payments_bp
from services.metrics import init_app as init_metrics, REQUEST_COUNT, REQUEST_LATENCY
from services.payments.service import build_payment_service

# --- Load .env exactly once, here ---
# If you run "python app.py", this ensures variables are loaded.
# If you use "flask run", Flask will also load .env automatically (when python-dotenv is installed).
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def _configure_logging() -> None:
    # default on in containers
    log_to_stdout = os.getenv("LOG_TO_STDOUT", "1") == "1"
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    if log_to_stdout:
        handler = logging.StreamHandler()
    else:
        log_dir = os.path.join(os.path.dirname(__file__), "log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, "app.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            # If file logging fails (e.g., in a container), fall back to stdout
            handler = logging.StreamHandler()

    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))

    # avoid duplicate handlers on reload
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def create_app(test_config: dict | None = None):
    app = Flask(__name__, instance_relative_config=True)

    # ---- Base config from environment (no hardcoded secrets) ----
    APP_ENV = os.getenv("APP_ENV", "development").lower()

    secret_key = os.getenv("FLASK_SECRET_KEY")
    if not secret_key and APP_ENV == "production":
        raise RuntimeError("FLASK_SECRET_KEY must be set in production (.env)")
    if not secret_key:
        secret_key = os.urandom(32)  # dev-only fallback

    app.config.from_mapping(
        SECRET_KEY=secret_key,
        APP_ENV=APP_ENV,
        DATABASE_URL=os.getenv("DATABASE_URL"),
    )
    if test_config:
        app.config.update(test_config)

    # ---- Logging ----
    _configure_logging()
    app.logger.setLevel(logging.INFO)

    # ---- DB ----
    engine, Session = init_engine_and_session(app.config.get("DATABASE_URL"))
    app.config["DB_ENGINE"] = engine

    if _env_bool("AUTO_CREATE_SCHEMA", True):
        Base.metadata.create_all(engine, checkfirst=True)

    # ---- Payments engine (one per app, shared by handlers) ----
    with app.app_context():
        service = build_payment_service(
            Session, http_session=app.config.get("PAYMENTS_HTTP_SESSION"))
    app.extensions["payments"] = service
    app.logger.info("Payment providers registered: %s",
                    [p.value for p in service.registry.registered_providers()] or "none")

    # ---- Blueprints ----
    app.register_blueprint(payments_bp)

    # Prometheus
    if _env_bool("METRICS_ENABLED", True):
        init_metrics(app)

    # ---- Errors ----

    @app.errorhandler(HTTPException)
    def http_error(e: HTTPException):
        if e.code == 404:
            app.logger.warning("404 %s %s", request.method, request.path)
        return jsonify(error=e.name, code=e.code), e.code

    # ---- Request log + metrics ----

    @app.before_request
    def _start_timer():
        g._t0 = time()

    @app.after_request
    def _log_request(resp):
        ms = (time() - getattr(g, "_t0", time())) * 1000
        app.logger.info("%s %s %s %s %.1fms",
                        request.remote_addr, request.method, request.full_path, resp.status_code, ms)

        # --- Skip self-scrapes to keep series clean ---
        ep = request.endpoint or ""
        path = request.path or ""
        if path.startswith("/metrics"):
            return resp

        endpoint = ep.replace(".", "_") or "unknown"
        method = request.method
        status = str(resp.status_code)

        REQUEST_COUNT.labels(
            method=method, endpoint=endpoint, status=status).inc()
        REQUEST_LATENCY.labels(
            endpoint=endpoint, method=method).observe(ms / 1000.0)
        return resp

    @app.get("/healthz")
    def healthz():
        # Liveness: process is up, Flask can serve a simple request
        return jsonify(status="ok"), 200

    @app.get("/readyz")
    def readyz():
        # Readiness: app can talk to the DB
        try:
            with current_app.config["DB_ENGINE"].connect() as conn:
                conn.execute(text("SELECT 1"))
            return jsonify(status="ok"), 200
        except Exception as e:
            current_app.logger.exception("Readiness check failed")
            return jsonify(status="error", error=str(e)), 500

    return app


if __name__ == "__main__":
    # TIP: use APP_ENV=production FLASK_SECRET_KEY=... when deploying
    app = create_app()
    app.run(host="0.0.0.0", port=8000, debug=(
        app.config["APP_ENV"] != "production"))
