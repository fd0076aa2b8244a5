import os
import tempfile
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("LIFECYCLE_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="hallbook-media-"))

from hallbook.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from hallbook.auth import create_access_token  # noqa: E402
from hallbook.database import Base, SessionLocal, engine  # noqa: E402
from hallbook.models import RoleEnum, User  # noqa: E402
from services.bookings.app import app as bookings_app  # noqa: E402
from services.cabins.app import app as cabins_app, hall_status_cache  # noqa: E402
from services.content.app import app as content_app  # noqa: E402
from services.payments.app import app as payments_app  # noqa: E402


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    hall_status_cache.clear()
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
def cabins_client() -> Generator[TestClient, None, None]:
    with TestClient(cabins_app) as client:
        yield client


@pytest.fixture()
def bookings_client() -> Generator[TestClient, None, None]:
    with TestClient(bookings_app) as client:
        yield client


@pytest.fixture()
def payments_client() -> Generator[TestClient, None, None]:
    with TestClient(payments_app) as client:
        yield client


@pytest.fixture()
def content_client() -> Generator[TestClient, None, None]:
    with TestClient(content_app) as client:
        yield client


@pytest.fixture()
def auth_header() -> Callable[[User], dict[str, str]]:
    def build(user: User) -> dict[str, str]:
        token = create_access_token({"sub": user.username, "role": user.role.value})
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture()
def make_user(db_session) -> Callable[..., User]:
    def factory(username: str, role: RoleEnum = RoleEnum.STUDENT) -> User:
        user = User(name=username.title(), username=username, email=f"{username}@example.com", role=role)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return factory


@pytest.fixture()
def admin(make_user) -> User:
    return make_user("admin", RoleEnum.ADMIN)


@pytest.fixture()
def merchant(make_user) -> User:
    return make_user("merchant", RoleEnum.MERCHANT)


@pytest.fixture()
def student(make_user) -> User:
    return make_user("student")
