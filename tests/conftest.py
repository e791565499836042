import importlib
import os
import sys

import pytest
from fastapi.testclient import TestClient

# Must be set before any app module reads settings
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

PASSWORD = "Password123!"


@pytest.fixture(scope="session")
def test_db_url(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("db") / "test_carbontrack.db"
    return f"sqlite:///{db_path}"


@pytest.fixture(scope="session")
def app(test_db_url):
    os.environ["DATABASE_URL"] = test_db_url

    import app.core.config as config
    importlib.reload(config)

    for module_name in list(sys.modules):
        if module_name.startswith("app.models"):
            del sys.modules[module_name]

    import app.db.database as database
    importlib.reload(database)

    import app.models
    importlib.reload(app.models)

    import main as main_module
    importlib.reload(main_module)

    app_instance = main_module.app
    app_instance.router.on_startup.clear()
    app_instance.router.on_shutdown.clear()

    database.Base.metadata.create_all(bind=database.engine)
    return app_instance


@pytest.fixture()
def db_session(app):
    from app.db.database import SessionLocal
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def make_user(db_session):
    """Get-or-create a user by username (the test database is shared per session)."""
    from app.core.security import get_password_hash
    from app.models.user import User

    def _make(username, email=None, is_admin=False, with_password=False, **fields):
        user = db_session.query(User).filter(User.username == username).first()
        if user:
            return user
        user = User(
            username=username,
            email=email,
            is_admin=is_admin,
            hashed_password=get_password_hash(PASSWORD) if with_password else None,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user("bc_admin", email="bc_admin@test.com", is_admin=True, with_password=True)


@pytest.fixture()
def member(make_user):
    return make_user("bc_member", email="bc_member@test.com", with_password=True)
