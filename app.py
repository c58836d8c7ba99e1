# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, Response, current_app
from flask_login import LoginManager
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError

# .env values must be in os.environ before config classes are imported
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from sophie_hub.api.response import api_success, unauthorized  # noqa: E402
from sophie_hub.models import User, db  # noqa: E402
from sophie_hub.sync import init_sync  # noqa: E402
from sophie_hub.utils.error_handler import register_error_handlers  # noqa: E402
from sophie_hub.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

_CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

app = Flask(__name__)

flask_env = os.environ.get("FLASK_ENV", "development")
for config_object in _CONFIG_BY_ENV.get(flask_env, _CONFIG_BY_ENV["development"]):
    app.config.from_object(config_object)

db.init_app(app)
login_manager = LoginManager()
login_manager.init_app(app)
app.extensions["login_manager"] = login_manager

setup_logging(app)
register_error_handlers(app)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _sqlite_pragma_hook(*, foreign_keys: bool):
    """Connect hook for SQLite: WAL plus a busy timeout so sync writers and API readers can overlap."""
    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if foreign_keys else ())

    def _apply(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        except Exception as exc:
            logger.warning("Could not apply SQLite pragmas: %s", exc)
        finally:
            cursor.close()

    return _apply


with app.app_context():
    engine = db.engine
    if engine.url.get_backend_name() == "sqlite" and not getattr(engine, "_sophie_hub_pragmas", False):
        event.listen(engine, "connect", _sqlite_pragma_hook(foreign_keys=not app.config.get("TESTING", False)))
        engine._sophie_hub_pragmas = True  # type: ignore[attr-defined]
    # Tests build and drop their own tables
    if not app.config.get("TESTING", False):
        db.create_all()


@login_manager.user_loader
def load_user(user_id):
    try:
        return db.session.get(User, int(user_id))
    except (ValueError, TypeError):
        return None
    except SQLAlchemyError as exc:
        current_app.logger.error("Could not load user %s: %s", user_id, exc)
        return None


@login_manager.unauthorized_handler
def unauthorized_callback():
    return unauthorized()


init_sync(app)


@app.get(app.config.get("HEALTH_CHECK_ENDPOINT", "/health"))
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        db.session.rollback()
        database = "unavailable"
    state = app.extensions.get("sync", {})
    payload = {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "sync_enabled": state.get("enabled", False),
        "worker_enabled": state.get("worker_enabled", False),
        "version": app.config.get("APP_VERSION"),
    }
    return api_success(payload, status=200 if database == "ok" else 503)


if app.config.get("MONITORING_ENABLED", False):

    @app.get(app.config.get("METRICS_ENDPOINT", "/metrics"))
    def metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
