# config/validation.py

"""
Environment variable validation for the identity sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key == "your-secret-key" or secret_key == "your_secret_key":
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    if os.environ.get("SYNC_ENABLED", "false").lower() == "true":
        source = os.environ.get("SYNC_SOURCE", "ldap").lower()
        if source == "ldap":
            for key in ("LDAP_SERVER_URL", "LDAP_BIND_DN", "LDAP_BIND_PASSWORD", "LDAP_USER_BASE_DN"):
                if not os.environ.get(key):
                    errors.append(f"{key} is required when SYNC_ENABLED=true and SYNC_SOURCE=ldap")
        elif source == "file":
            if not os.environ.get("SYNC_FILE_PATH"):
                errors.append("SYNC_FILE_PATH is required when SYNC_ENABLED=true and SYNC_SOURCE=file")
        else:
            errors.append(f"SYNC_SOURCE '{source}' is not supported; use 'ldap' or 'file'")

    if os.environ.get("SYNC_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when SYNC_WORKER_ENABLED=true in production")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    lines = ["Identity sync cannot start: environment validation failed.", ""]
    lines.extend(f"  - {error}" for error in errors)
    lines.extend(["", "Set the variables above (see .env.example) and restart."])
    sys.stderr.write("\n".join(lines) + "\n")
    sys.exit(1)
