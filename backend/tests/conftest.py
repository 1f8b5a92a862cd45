from pathlib import Path
from dotenv import load_dotenv
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
import os
import sys

# Load environment variables for tests before any settings are read
load_dotenv(Path(__file__).resolve().parents[1] / '.env.test')
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from booking_core.core.config import settings
from booking_core.database import Base, create_db_engine, get_db
from booking_core.models import Client, Provider, Service, ServiceAddon

# A Monday well clear of "now" so sweeps never touch fixtures by accident
SLOT_DAY = datetime(2030, 1, 7)


def at(hour: int, minute: int = 0) -> datetime:
    return SLOT_DAY.replace(hour=hour, minute=minute)


@pytest.fixture(autouse=True)
def pin_settings(monkeypatch):
    """Keep every test on the same fee and webhook configuration."""
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test_secret")
    monkeypatch.setattr(settings, "WEBHOOK_TOLERANCE_SECONDS", 300)
    monkeypatch.setattr(settings, "PLATFORM_FEE_MINOR", 338)
    monkeypatch.setattr(settings, "GATEWAY_COST_MINOR", 38)
    monkeypatch.setattr(settings, "PROVIDER_SHARE_PERCENT", 40)
    monkeypatch.setattr(settings, "REDIS_URL", "disabled")
    monkeypatch.setattr(settings, "MISSED_GRACE_MINUTES", 30)


@pytest.fixture
def engine(tmp_path):
    # File-backed so several threads can share it (concurrency tests)
    eng = create_db_engine(f"sqlite:///{tmp_path / 'booking_core_test.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def Session(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(Session):
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog(Session):
    """Providers, services and add-ons used across tests; returns ids only."""
    db = Session()
    try:
        standard = Provider(display_name="Fade Studio", gateway_account_id="acct_std")
        internal = Provider(display_name="House Account", is_zero_fee=True)
        other = Provider(display_name="Other Shop")
        db.add_all([standard, internal, other])
        db.flush()

        haircut = Service(provider_id=standard.id, name="Haircut", price=Decimal("40.00"), duration_minutes=30)
        unpriced = Service(provider_id=standard.id, name="Consult", price=None, duration_minutes=30)
        untimed = Service(provider_id=standard.id, name="Walk-in", price=Decimal("20.00"), duration_minutes=None)
        trim = Service(provider_id=internal.id, name="Trim", price=Decimal("25.00"), duration_minutes=45)
        other_service = Service(provider_id=other.id, name="Shave", price=Decimal("15.00"), duration_minutes=20)
        db.add_all([haircut, unpriced, untimed, trim, other_service])

        beard = ServiceAddon(provider_id=standard.id, name="Beard", price=Decimal("10.00"))
        wash = ServiceAddon(provider_id=standard.id, name="Wash", price=Decimal("5.50"))
        retired = ServiceAddon(provider_id=standard.id, name="Old", price=Decimal("3.00"), is_active=False)
        towel = ServiceAddon(provider_id=internal.id, name="Hot towel", price=Decimal("7.25"))
        oil = ServiceAddon(provider_id=internal.id, name="Oil", price=Decimal("2.50"))
        foreign = ServiceAddon(provider_id=other.id, name="Foreign", price=Decimal("1.00"))
        db.add_all([beard, wash, retired, towel, oil, foreign])

        client = Client(email="client@test.com", full_name="Casey Client")
        db.add(client)
        db.commit()

        return SimpleNamespace(
            standard=standard.id,
            internal=internal.id,
            other=other.id,
            haircut=haircut.id,
            unpriced=unpriced.id,
            untimed=untimed.id,
            trim=trim.id,
            other_service=other_service.id,
            beard=beard.id,
            wash=wash.id,
            retired=retired.id,
            towel=towel.id,
            oil=oil.id,
            foreign=foreign.id,
            client=client.id,
        )
    finally:
        db.close()


@pytest.fixture
def client(Session):
    from booking_core.main import app

    def override_db():
        session = Session()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
