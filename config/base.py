# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_pattern_list(value):
    """
    Parse a comma-separated list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Non-empty, stripped items.
    """
    if not value:
        return ()

    seen = set()
    items = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item or item in seen:
            continue
        seen.add(item)
        items.append(item)
    return tuple(items)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY:
        SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Directory sync configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_SOURCE = os.environ.get("SYNC_SOURCE", "ldap").strip().lower()
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    SYNC_RUN_TIMEOUT_SECONDS = _coerce_int(os.environ.get("SYNC_RUN_TIMEOUT_SECONDS"), 1800, minimum=60)
    SYNC_DEFAULT_LOGIN_SHELL = os.environ.get("SYNC_DEFAULT_LOGIN_SHELL", "/bin/bash")
    SYNC_PLACEHOLDER_EMAIL_DOMAIN = os.environ.get("SYNC_PLACEHOLDER_EMAIL_DOMAIN") or None
    SYNC_PLACEHOLDER_EMAIL_PATTERNS = _parse_pattern_list(os.environ.get("SYNC_PLACEHOLDER_EMAIL_PATTERNS", ""))
    SYNC_OWNERSHIP_POLICY_PATH = os.environ.get("SYNC_OWNERSHIP_POLICY_PATH") or None
    SYNC_ALLOW_EMPTY_SWEEP = _coerce_bool(os.environ.get("SYNC_ALLOW_EMPTY_SWEEP"), default=False)
    SYNC_ORPHANED_STUDENT_POLICY = os.environ.get("SYNC_ORPHANED_STUDENT_POLICY", "detach").strip().lower()
    if SYNC_ORPHANED_STUDENT_POLICY not in {"detach", "unassign"}:
        raise ValueError("SYNC_ORPHANED_STUDENT_POLICY must be 'detach' or 'unassign'.")
    SYNC_INCREMENTAL_INTERVAL_MINUTES = _coerce_int(os.environ.get("SYNC_INCREMENTAL_INTERVAL_MINUTES"), 5, minimum=0)
    SYNC_FULL_SYNC_HOUR = _coerce_int(os.environ.get("SYNC_FULL_SYNC_HOUR"), 2, minimum=-1)
    SYNC_FILE_PATH = os.environ.get("SYNC_FILE_PATH") or None
    SYNC_RUN_RETENTION_DAYS = _coerce_int(os.environ.get("SYNC_RUN_RETENTION_DAYS"), 30, minimum=0)

    if SYNC_ENABLED and SYNC_SOURCE not in {"ldap", "file"}:
        raise ValueError(f"SYNC_SOURCE '{SYNC_SOURCE}' is not supported. Use 'ldap' or 'file'.")

    # LDAP source
    LDAP_SERVER_URL = os.environ.get("LDAP_SERVER_URL", "ldap://localhost:389")
    LDAP_BIND_DN = os.environ.get("LDAP_BIND_DN")
    LDAP_BIND_PASSWORD = os.environ.get("LDAP_BIND_PASSWORD")
    LDAP_USER_BASE_DN = os.environ.get("LDAP_USER_BASE_DN", "ou=people,dc=example,dc=org")
    LDAP_USER_FILTER = os.environ.get("LDAP_USER_FILTER", "(objectClass=posixAccount)")
    LDAP_USE_SSL = _coerce_bool(os.environ.get("LDAP_USE_SSL"), default=False)
    LDAP_TIMEOUT_SECONDS = _coerce_int(os.environ.get("LDAP_TIMEOUT_SECONDS"), 30, minimum=1)
    LDAP_PAGE_SIZE = _coerce_int(os.environ.get("LDAP_PAGE_SIZE"), 500, minimum=0)

    # Celery worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    SYNC_TASK_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_TIME_LIMIT"), 30 * 60, minimum=60)
    SYNC_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_SOFT_TIME_LIMIT"), 25 * 60, minimum=60)


class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path = os.path.join(instance_path, "identity_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
