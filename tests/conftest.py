import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("TICKET_SIGNING_KEY", "test-signing-key")

import pytest
from fastapi.testclient import TestClient

import main
import models
import schemas
from database import SessionLocal, engine
from fakes import NOW, InMemoryRepository
from ticket_signing import HmacTicketSigner


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def signer():
    return HmacTicketSigner("test-signing-key")


@pytest.fixture
def repo():
    fake = InMemoryRepository()
    fake.events["evt-a"] = schemas.Event(id="evt-a", name="Holi Night", discount_budget=None)
    fake.events["evt-b"] = schemas.Event(id="evt-b", name="Jazz Evening", discount_budget=None)
    fake.passes["pass-a"] = schemas.Pass(
        id="pass-a", event_id="evt-a", name="General", unit_price=500, capacity=100
    )
    return fake


@pytest.fixture
def make_booking(repo):
    def _make(booking_id="bk-1", status=schemas.BookingStatus.CONFIRMED, event_id="evt-a", quantity=2):
        booking = schemas.Booking(
            id=booking_id,
            event_id=event_id,
            pass_id="pass-a",
            customer_name="Asha Rao",
            customer_email="asha@example.com",
            quantity=quantity,
            original_amount=500 * quantity,
            final_amount=500 * quantity,
            status=status,
            ticket_issued_at=NOW if status == schemas.BookingStatus.CONFIRMED else None,
        )
        repo.bookings[booking_id] = booking
        return booking

    return _make


@pytest.fixture
def db():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_admin_actor] = lambda: {"username": "admin", "role": "admin"}
    main.app.dependency_overrides[main.get_scanner_user] = lambda: {"username": "gate-1", "role": "scanner"}
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
