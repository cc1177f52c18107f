# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from identity_app.cli import register_admin_cli  # noqa: E402
from identity_app.models import db  # noqa: E402
from identity_app.sync import init_sync  # noqa: E402
from identity_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)

environment = os.environ.get("FLASK_ENV", "development")
if environment == "production":
    validate_and_exit(environment)

app = Flask(__name__)
for config_object in CONFIG_BY_ENV.get(environment, CONFIG_BY_ENV["development"]):
    app.config.from_object(config_object)

db.init_app(app)
setup_logging(app)


def _sqlite_pragma_listener(*, foreign_keys: bool):
    """Build a ``connect`` listener applying the SQLite pragmas."""

    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if foreign_keys else ())

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        except Exception as exc:
            logger.warning("Could not apply SQLite pragma to identity store: %s", exc)
        finally:
            cursor.close()

    return _on_connect


with app.app_context():
    engine = db.engine
    if engine.url.get_backend_name() == "sqlite" and not getattr(engine, "_identity_pragmas", False):
        event.listen(engine, "connect", _sqlite_pragma_listener(foreign_keys=not app.config.get("TESTING", False)))
        engine._identity_pragmas = True  # type: ignore[attr-defined]
    if not app.config.get("TESTING", False):
        try:
            db.create_all()
        except SQLAlchemyError:
            logger.exception("Failed to create identity tables")
            raise

init_sync(app)
register_admin_cli(app)
