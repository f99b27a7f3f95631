import pytest
from fastapi.testclient import TestClient

from therapy_booking.auth.dependencies import get_current_user, get_stream_user
from therapy_booking.main import app
from therapy_booking.models.user import User
from therapy_booking.routes import availability_routes, booking_routes, lock_routes
from therapy_booking.routes.deps import (
    get_committer,
    get_intake_records,
    get_lock_manager,
    get_notifier,
    get_resolver,
)


@pytest.fixture
def act_as():
    def _act_as(user_id: str) -> User:
        user = User(id=user_id, email=f'{user_id}@example.com', role='client')
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_stream_user] = lambda: user
        return user

    return _act_as


@pytest.fixture
def api_client(monkeypatch, act_as, resolver, lock_manager, committer, notifier, intake_records):
    for module in (availability_routes, booking_routes, lock_routes):
        monkeypatch.setattr(module, 'ensure_database_ready', lambda: None)

    app.dependency_overrides.update(
        {
            get_resolver: lambda: resolver,
            get_lock_manager: lambda: lock_manager,
            get_committer: lambda: committer,
            get_notifier: lambda: notifier,
            get_intake_records: lambda: intake_records,
        }
    )
    act_as('client-a')
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
