import os
import tempfile

import pytest

_DATA_DIR = tempfile.mkdtemp(prefix="finlog-tests-")
os.environ.setdefault("FINLOG_DATA_DIR", _DATA_DIR)
os.environ.setdefault("FINLOG_DATABASE_URL", f"sqlite:///{_DATA_DIR}/finlog.db")
os.environ["FINLOG_BCRYPT_ROUNDS"] = "4"
os.environ["FINLOG_SMTP_HOST"] = ""
os.environ["FINLOG_INSIGHTS_API_KEY"] = ""

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from auth import hash_secret  # noqa: E402
from database import Base, get_db  # noqa: E402
from models import User  # noqa: E402
from services import SavingsInstrumentService  # noqa: E402


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        SavingsInstrumentService(session).ensure_defaults()
    yield factory
    engine.dispose()


@pytest.fixture
def client(session_factory):
    import main

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def create_user(factory, email: str, password: str = "secret-pass") -> int:
    with factory() as session:
        user = User(
            email=email,
            name=email.split("@")[0].title(),
            password_hash=hash_secret(password),
            security_question="First pet?",
            security_answer_hash=hash_secret("fluffy"),
        )
        session.add(user)
        session.commit()
        return user.id


@pytest.fixture
def login(client, session_factory):
    def _login(email: str = "alice@example.com", password: str = "secret-pass") -> int:
        user_id = create_user(session_factory, email, password)
        client.cookies.clear()
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200
        return user_id

    return _login
