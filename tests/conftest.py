from datetime import datetime, timezone
from types import SimpleNamespace

import freezegun
from freezegun.config import DEFAULT_IGNORE_LIST
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gigops.auth.security import ActingIdentity, create_access_token
from gigops.config import settings
from gigops.db import Base, enable_sqlite_foreign_keys, get_db
from gigops.models.models import (
    Asset,
    Kit,
    KitAsset,
    Organization,
    OrganizationMember,
    User,
)
from gigops.services.gigs import NewGig, create_gig
from gigops.services.reconcile import New, ParticipantFields

# freezegun skips any module whose name starts with "gi" (meant for PyGObject),
# which would leave every gigops clock running
freezegun.configure(default_ignore_list=[m for m in DEFAULT_IGNORE_LIST if m != "gi"])


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Each test starts from the shipped defaults regardless of the local .env."""
    monkeypatch.setattr(settings, "tz_default", "UTC")
    monkeypatch.setattr(settings, "kit_conflict_boundary", "inclusive")
    monkeypatch.setattr(settings, "strict_references", False)
    monkeypatch.setattr(settings, "max_gig_hierarchy_depth", 8)
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    monkeypatch.setattr(settings, "jwt_algorithm", "HS256")


@pytest.fixture
def world(db):
    """
    Three organizations and a handful of users:

    - production: admin (Admin), manager (Manager), staff (Staff), viewer (Viewer)
    - sound: sound_manager (Manager)
    - rentals: rentals_admin (Admin), owns assets A1..A3 and kits K1 {A1, A2}, K2 {A3}, empty
    - outsider has no memberships at all
    """
    production = Organization(name="Northside Productions", type="Production")
    sound = Organization(name="Big Sound Co", type="Sound")
    rentals = Organization(name="Backline Rentals", type="Rentals")
    db.add_all([production, sound, rentals])

    users = {}
    for key in ("admin", "manager", "staff", "viewer", "sound_manager", "rentals_admin", "outsider", "crew"):
        users[key] = User(email=f"{key}@example.com", first_name=key.replace("_", " ").title())
    db.add_all(users.values())
    db.flush()

    memberships = [
        (production, "admin", "Admin"),
        (production, "manager", "Manager"),
        (production, "staff", "Staff"),
        (production, "viewer", "Viewer"),
        (sound, "sound_manager", "Manager"),
        (rentals, "rentals_admin", "Admin"),
    ]
    for org, user_key, role in memberships:
        db.add(OrganizationMember(organization_id=org.id, user_id=users[user_key].id, role=role))

    a1 = Asset(organization_id=rentals.id, name="Mixing desk", category="Audio")
    a2 = Asset(organization_id=rentals.id, name="Stage box", category="Audio")
    a3 = Asset(organization_id=rentals.id, name="Moving head", category="Lighting")
    db.add_all([a1, a2, a3])
    k1 = Kit(organization_id=rentals.id, name="FOH kit")
    k2 = Kit(organization_id=rentals.id, name="Lighting kit")
    empty = Kit(organization_id=rentals.id, name="Empty case")
    db.add_all([k1, k2, empty])
    db.flush()
    db.add_all([
        KitAsset(kit_id=k1.id, asset_id=a1.id),
        KitAsset(kit_id=k1.id, asset_id=a2.id),
        KitAsset(kit_id=k2.id, asset_id=a3.id),
    ])
    db.commit()

    return SimpleNamespace(
        production=production.id,
        sound=sound.id,
        rentals=rentals.id,
        users={k: u.id for k, u in users.items()},
        identities={k: ActingIdentity(user_id=u.id) for k, u in users.items()},
        assets={"A1": a1.id, "A2": a2.id, "A3": a3.id},
        kits={"K1": k1.id, "K2": k2.id, "empty": empty.id},
    )


@pytest.fixture
def make_gig(db, world):
    """Create a gig with the production company as its only participant."""
    def _make(title="Summer Show", start=None, end=None, identity=None, participants=None, staff_slots=(), **extra):
        data = NewGig(
            title=title,
            start=start or utc(2025, 7, 15, 14, 0),
            end=end or utc(2025, 7, 15, 23, 0),
            timezone=extra.pop("timezone", "UTC"),
            **extra,
        )
        if participants is None:
            participants = [New(ParticipantFields(organization_id=world.production, role="Production"))]
        return create_gig(db, identity or world.identities["admin"], data, participants, staff_slots)
    return _make


@pytest.fixture
def client(session_factory):
    # One app per process: the metrics collectors register globally
    from gigops.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(world):
    def _headers(user_key: str) -> dict:
        token = create_access_token(str(world.users[user_key]))
        return {"Authorization": f"Bearer {token}"}
    return _headers
