# conftest.py

import os

import pytest

# Must be set before ``app`` is imported so TestingConfig is selected.
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from identity_app.models import Identity, IdentityRole, PIProfile, StudentProfile, db  # noqa: E402
from identity_app.sync import init_sync  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Test application backed by a fresh in-memory schema."""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "SYNC_ENABLED": False,
            "SYNC_WORKER_ENABLED": False,
            "SYNC_SOURCE": "file",
            "SYNC_FILE_PATH": None,
            "SYNC_ALLOW_EMPTY_SWEEP": False,
            "SYNC_ORPHANED_STUDENT_POLICY": "detach",
            "SYNC_PLACEHOLDER_EMAIL_DOMAIN": None,
            "SYNC_PLACEHOLDER_EMAIL_PATTERNS": (),
            "SYNC_OWNERSHIP_POLICY_PATH": None,
            "SYNC_RUN_TIMEOUT_SECONDS": 1800,
            "CELERY_SQLITE_PATH": str(tmp_path / "celery.sqlite"),
            "CELERY_CONFIG": None,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
        }
    )
    flask_app.extensions.pop("identity_sync", None)
    init_sync(flask_app)

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def identity_factory(app):
    """Persist identities with sensible directory defaults."""
    counter = {"value": 0}

    def _factory(external_id=None, **overrides):
        counter["value"] += 1
        number = counter["value"]
        values = {
            "external_id": external_id or f"user{number:03d}",
            "ldap_dn": None,
            "uid_number": 10000 + number,
            "gid_number": 500,
            "home_directory": None,
            "login_shell": "/bin/bash",
            "role": IdentityRole.UNASSIGNED,
            "is_active": True,
            "present_in_last_snapshot": True,
        }
        values.update(overrides)
        if values["ldap_dn"] is None:
            values["ldap_dn"] = f"uid={values['external_id']},ou=people,dc=example,dc=org"
        if values["home_directory"] is None:
            values["home_directory"] = f"/home/{values['external_id']}"
        identity = Identity(**values)
        db.session.add(identity)
        db.session.commit()
        return identity

    return _factory


@pytest.fixture
def pi_factory(identity_factory):
    """Identity holding the ``pi`` role with an attached profile."""

    def _factory(external_id=None, *, max_students=10, **overrides):
        identity = identity_factory(external_id, role=IdentityRole.PI, **overrides)
        profile = PIProfile(identity_id=identity.id, department="Physics", max_students=max_students, is_active=True)
        db.session.add(profile)
        db.session.commit()
        return identity, profile

    return _factory


@pytest.fixture
def student_factory(identity_factory):
    def _factory(external_id=None, *, pi_profile=None, **overrides):
        identity = identity_factory(external_id, role=IdentityRole.STUDENT, **overrides)
        profile = StudentProfile(identity_id=identity.id, pi_profile_id=pi_profile.id if pi_profile else None)
        db.session.add(profile)
        db.session.commit()
        return identity, profile

    return _factory


def pytest_configure(config):
    """Ensure the testing environment is selected"""
    os.environ["FLASK_ENV"] = "testing"
