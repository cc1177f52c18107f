import pytest

from config.validation import validate_and_exit, validate_environment

PRODUCTION_ENV = {
    "SECRET_KEY": "a" * 64,
    "DATABASE_URL": "postgresql://identity@db/identity",
}


@pytest.fixture
def clean_env(monkeypatch):
    for key in (
        "SECRET_KEY",
        "DATABASE_URL",
        "SYNC_ENABLED",
        "SYNC_SOURCE",
        "SYNC_FILE_PATH",
        "SYNC_WORKER_ENABLED",
        "CELERY_BROKER_URL",
        "LDAP_SERVER_URL",
        "LDAP_BIND_DN",
        "LDAP_BIND_PASSWORD",
        "LDAP_USER_BASE_DN",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_non_production_is_always_valid(clean_env):
    assert validate_environment("development") == (True, [])
    assert validate_environment("testing") == (True, [])


def test_production_requires_secret_and_database(clean_env):
    clean_env.setenv("SECRET_KEY", "your-secret-key")

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert any(error.startswith("SECRET_KEY") for error in errors)
    assert any(error.startswith("DATABASE_URL") for error in errors)


def test_production_ldap_sync_settings(clean_env):
    for key, value in PRODUCTION_ENV.items():
        clean_env.setenv(key, value)
    clean_env.setenv("SYNC_ENABLED", "true")
    clean_env.setenv("LDAP_SERVER_URL", "ldaps://ldap.example.org")

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert sorted(error.split()[0] for error in errors) == ["LDAP_BIND_DN", "LDAP_BIND_PASSWORD", "LDAP_USER_BASE_DN"]


def test_production_file_source_and_worker(clean_env):
    for key, value in PRODUCTION_ENV.items():
        clean_env.setenv(key, value)
    clean_env.setenv("SYNC_ENABLED", "true")
    clean_env.setenv("SYNC_SOURCE", "file")
    clean_env.setenv("SYNC_WORKER_ENABLED", "true")

    _, errors = validate_environment("production")

    assert [error.split()[0] for error in errors] == ["SYNC_FILE_PATH", "CELERY_BROKER_URL"]

    clean_env.setenv("SYNC_FILE_PATH", "/srv/directory.json")
    clean_env.setenv("CELERY_BROKER_URL", "redis://cache:6379/0")
    assert validate_environment("production") == (True, [])


def test_unknown_source_rejected(clean_env):
    for key, value in PRODUCTION_ENV.items():
        clean_env.setenv(key, value)
    clean_env.setenv("SYNC_ENABLED", "true")
    clean_env.setenv("SYNC_SOURCE", "nis")

    _, errors = validate_environment("production")

    assert errors == ["SYNC_SOURCE 'nis' is not supported; use 'ldap' or 'file'"]


def test_validate_and_exit(clean_env, capsys):
    with pytest.raises(SystemExit) as excinfo:
        validate_and_exit("production")

    assert excinfo.value.code == 1
    assert "environment validation failed" in capsys.readouterr().err

    validate_and_exit("development")
