import os
from datetime import datetime
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("LOCAL_TIMEZONE", "America/Sao_Paulo")
os.environ.setdefault("RABBITMQ_HOST", "")

from common.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from common.auth import get_password_hash  # noqa: E402
from common.cache import directory_cache  # noqa: E402
from common.database import Base, SessionLocal, engine  # noqa: E402
from common.dependencies import get_clock  # noqa: E402
from common.models import Profile  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.community.app import app as community_app  # noqa: E402
from services.users.app import app as users_app  # noqa: E402

PASSWORD = "Passw0rd!"


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    directory_cache.clear()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_profile(db_session) -> Callable[..., Profile]:
    def factory(**overrides) -> Profile:
        count = db_session.query(Profile).count()
        fields = {
            "email": f"member{count}@example.com",
            "hashed_password": get_password_hash(PASSWORD),
            "full_name": f"Member {count}",
            "company_name": "Acme",
            "assigned_room": "01",
        }
        fields.update(overrides)
        profile = Profile(**fields)
        db_session.add(profile)
        db_session.commit()
        db_session.refresh(profile)
        return profile

    return factory


@pytest.fixture()
def users_client() -> Generator[TestClient, None, None]:
    with TestClient(users_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client
    bookings_app.dependency_overrides.pop(get_clock, None)


@pytest.fixture()
def community_client() -> Generator[TestClient, None, None]:
    with TestClient(community_app) as client:
        yield client


@pytest.fixture()
def freeze_bookings_clock() -> Callable[[datetime], None]:
    """Pin the bookings service wall clock to a naive-UTC instant."""

    def freeze(now: datetime) -> None:
        bookings_app.dependency_overrides[get_clock] = lambda: (lambda: now)

    yield freeze
    bookings_app.dependency_overrides.pop(get_clock, None)


@pytest.fixture()
def signup(users_client) -> Callable[..., tuple[dict, dict[str, str]]]:
    """Register a member through the API and return its profile and auth header."""

    def factory(email: str, full_name: str, **extra) -> tuple[dict, dict[str, str]]:
        payload = {"full_name": full_name, "email": email, "password": PASSWORD, **extra}
        response = users_client.post("/users/register", json=payload)
        assert response.status_code == 201, response.text
        login = users_client.post(
            "/users/login",
            data={"username": email, "password": PASSWORD},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert login.status_code == 200, login.text
        return response.json(), {"Authorization": f"Bearer {login.json()['access_token']}"}

    return factory
