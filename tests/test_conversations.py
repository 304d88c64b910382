"""
Tests for the conversation registry.

Tests cover:
- Creating and re-fetching the single conversation of a pair
- service_id recorded on first creation only
- Participant validation
- Concurrent first contact and the lost-race re-fetch path
- Role-filtered, enriched inbox listing
"""

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from marketchat import conversations as registry
from marketchat.errors import ConversationNotFound, ParticipantNotFound, StoreUnavailable
from marketchat.messages import append_message
from marketchat.models import Conversation, Role
from marketchat.storage import Base, SessionLocal, engine


def conversation_count(db) -> int:
    return db.execute(select(func.count(Conversation.id))).scalar()


class TestGetOrCreate:
    """Test get-or-create semantics at the service level."""

    def test_creates_then_returns_existing(self, directory):
        first, created = registry.get_or_create_conversation(directory, "b1", "v1")
        second, created_again = registry.get_or_create_conversation(directory, "b1", "v1")

        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert conversation_count(directory) == 1

    def test_service_id_only_recorded_on_creation(self, directory):
        first, _ = registry.get_or_create_conversation(directory, "b1", "v1", service_id="svc-1")
        again, _ = registry.get_or_create_conversation(directory, "b1", "v1", service_id="svc-2")

        assert again.id == first.id
        assert again.service_id == "svc-1"

    def test_one_conversation_per_pair_across_services(self, directory):
        registry.get_or_create_conversation(directory, "b1", "v1", service_id="svc-1")
        registry.get_or_create_conversation(directory, "b1", "v1")
        registry.get_or_create_conversation(directory, "b1", "v2")

        assert conversation_count(directory) == 2

    def test_unknown_vendor_rejected(self, directory):
        with pytest.raises(ParticipantNotFound):
            registry.get_or_create_conversation(directory, "b1", "missing-vendor")
        assert conversation_count(directory) == 0

    def test_unknown_buyer_rejected(self, directory):
        with pytest.raises(ParticipantNotFound):
            registry.get_or_create_conversation(directory, "ghost", "v1")
        assert conversation_count(directory) == 0

    def test_get_unknown_conversation(self, directory):
        with pytest.raises(ConversationNotFound):
            registry.get_conversation(directory, "nope")


class TestCreationRace:
    """Test idempotent pairing under contention."""

    def test_concurrent_first_contact_yields_one_conversation(self, directory):
        def open_pair(_):
            with SessionLocal() as session:
                conversation, _ = registry.get_or_create_conversation(session, "b1", "v1")
                return conversation.id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(open_pair, range(8)))

        assert len(set(ids)) == 1
        assert conversation_count(directory) == 1

    def test_lost_race_refetches_winner(self, directory, monkeypatch):
        """Simulate another process inserting between our lookup and our insert."""
        with SessionLocal() as other:
            winner, _ = registry.get_or_create_conversation(other, "b1", "v1", service_id="first")
            winner_id = winner.id

        real_find = registry._find_pair
        calls = {"n": 0}

        def stale_then_real(db, buyer_id, vendor_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_find(db, buyer_id, vendor_id)

        monkeypatch.setattr(registry, "_find_pair", stale_then_real)

        conversation, created = registry.get_or_create_conversation(directory, "b1", "v1", service_id="second")

        assert created is False
        assert conversation.id == winner_id
        assert conversation.service_id == "first"
        assert conversation_count(directory) == 1


class TestMissingSchema:

    def test_missing_tables_report_store_unavailable(self, directory):
        directory.close()
        Base.metadata.drop_all(bind=engine)
        with SessionLocal() as session:
            with pytest.raises(StoreUnavailable):
                registry.get_or_create_conversation(session, "b1", "v1")


class TestConversationRoutes:
    """Test POST /conversations and inbox listing over HTTP."""

    def test_create_returns_201_then_200(self, client):
        body = {"buyer_id": "b1", "vendor_id": "v1", "service_id": "svc-9"}

        created = client.post("/conversations", json=body)
        again = client.post("/conversations", json=body)

        assert created.status_code == 201
        assert again.status_code == 200
        assert created.json()["id"] == again.json()["id"]
        assert created.json()["service_id"] == "svc-9"
        assert created.json()["vendor"]["name"] == "Acme Catering"
        assert created.json()["buyer"]["name"] == "Alice"

    def test_unknown_vendor_is_404(self, client):
        response = client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "nope"})

        assert response.status_code == 404
        assert response.json()["code"] == "participant_not_found"

    def test_unknown_fields_rejected(self, client):
        response = client.post(
            "/conversations",
            json={"buyer_id": "b1", "vendor_id": "v1", "status": "OPEN"},
        )
        assert response.status_code == 422

    def test_missing_schema_is_503_store_unavailable(self, client):
        Base.metadata.drop_all(bind=engine)
        response = client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "v1"})

        assert response.status_code == 503
        assert response.json()["code"] == "store_unavailable"
        assert "Retry-After" not in response.headers


class TestInbox:
    """Test GET /users/{user_id}/conversations."""

    @pytest.fixture
    def seeded(self, client):
        c1 = client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "v1"}).json()
        c2 = client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "v2"}).json()
        c3 = client.post("/conversations", json={"buyer_id": "b2", "vendor_id": "v1"}).json()
        return client, c1, c2, c3

    def test_buyer_sees_own_conversations(self, seeded):
        client, c1, c2, c3 = seeded
        response = client.get("/users/b1/conversations", params={"role": "BUYER"})

        assert response.status_code == 200
        ids = {c["id"] for c in response.json()["data"]}
        assert ids == {c1["id"], c2["id"]}

    def test_vendor_resolved_through_directory(self, seeded):
        client, c1, c2, c3 = seeded
        response = client.get("/users/u-v1/conversations", params={"role": "VENDOR"})

        ids = {c["id"] for c in response.json()["data"]}
        assert ids == {c1["id"], c3["id"]}

    def test_user_without_vendor_profile_sees_nothing(self, seeded):
        client = seeded[0]
        response = client.get("/users/b1/conversations", params={"role": "VENDOR"})

        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_admin_sees_everything(self, seeded):
        client = seeded[0]
        response = client.get("/users/anyone/conversations", params={"role": "SUPER_ADMIN"})

        assert len(response.json()["data"]) == 3

    def test_ordered_by_latest_activity(self, seeded):
        client, c1, c2, c3 = seeded
        client.post(f"/conversations/{c1['id']}/messages", json={"sender_id": "b1", "content": "ping"})

        data = client.get("/users/b1/conversations", params={"role": "BUYER"}).json()["data"]

        assert data[0]["id"] == c1["id"]
        assert data[0]["last_message"] == "ping"
        assert data[1]["last_message"] is None

    def test_unread_count_for_viewer(self, seeded):
        client, c1, _, _ = seeded
        client.post(f"/conversations/{c1['id']}/messages", json={"sender_id": "v1", "content": "hello"})
        client.post(f"/conversations/{c1['id']}/messages", json={"sender_id": "v1", "content": "still there?"})
        client.post(f"/conversations/{c1['id']}/messages", json={"sender_id": "b1", "content": "yes"})

        buyer_view = client.get("/users/b1/conversations", params={"role": "BUYER"}).json()["data"]
        vendor_view = client.get("/users/u-v1/conversations", params={"role": "VENDOR"}).json()["data"]

        assert next(c for c in buyer_view if c["id"] == c1["id"])["unread_count"] == 2
        assert next(c for c in vendor_view if c["id"] == c1["id"])["unread_count"] == 1

    def test_invalid_role_rejected(self, client):
        response = client.get("/users/b1/conversations", params={"role": "GUEST"})
        assert response.status_code == 422


def test_list_conversations_service_level(directory):
    c1, _ = registry.get_or_create_conversation(directory, "b1", "v1")
    c2, _ = registry.get_or_create_conversation(directory, "b1", "v2")
    append_message(directory, c1.id, "v1", "newest")

    listed = registry.list_conversations_for_user(directory, "b1", Role.BUYER)

    assert [c.id for c in listed] == [c1.id, c2.id]
