"""
Tests for read-side enrichment and health probes.
"""

from sqlalchemy.exc import OperationalError

from marketchat import enrichment, identity
from marketchat.conversations import get_or_create_conversation
from marketchat.messages import append_message


def test_display_fields_and_placeholders(directory):
    known, _ = get_or_create_conversation(directory, "b1", "v1")
    blank, _ = get_or_create_conversation(directory, "b2", "v2")

    summaries = {s.id: s for s in enrichment.enrich_conversations(directory, [known, blank])}

    assert summaries[known.id].vendor.name == "Acme Catering"
    assert summaries[known.id].vendor.avatar_url == "https://cdn.example/acme.png"
    assert summaries[known.id].buyer.name == "Alice"
    assert summaries[blank.id].vendor.name == "Unknown Vendor"
    assert summaries[blank.id].buyer.name == "Anonymous"
    assert summaries[blank.id].buyer.avatar_url is None


def test_last_message_preview(directory):
    conversation, _ = get_or_create_conversation(directory, "b1", "v1")
    append_message(directory, conversation.id, "b1", "first")
    append_message(directory, conversation.id, "v1", "latest")

    [summary] = enrichment.enrich_conversations(directory, [conversation])

    assert summary.last_message == "latest"


def test_lookup_failure_degrades_to_placeholders(directory, monkeypatch):
    conversation, _ = get_or_create_conversation(directory, "b1", "v1")

    def broken(db, ids):
        raise OperationalError("SELECT", {}, Exception("connection lost"))

    monkeypatch.setattr(identity, "get_vendor_profiles", broken)

    [summary] = enrichment.enrich_conversations(directory, [conversation])

    assert summary.vendor.name == "Unknown Vendor"
    assert summary.buyer.name == "Alice"
    assert summary.id == conversation.id


def test_batched_lookups(directory, monkeypatch):
    first, _ = get_or_create_conversation(directory, "b1", "v1")
    second, _ = get_or_create_conversation(directory, "b2", "v1")
    calls = []
    real = identity.get_vendor_profiles

    def counting(db, ids):
        ids = list(ids)
        calls.append(ids)
        return real(db, ids)

    monkeypatch.setattr(identity, "get_vendor_profiles", counting)

    enrichment.enrich_conversations(directory, [first, second])

    assert len(calls) == 1


def test_empty_input(directory):
    assert enrichment.enrich_conversations(directory, []) == []
    assert enrichment.enrich_notifications(directory, []) == []


class TestHealth:

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client):
        from marketchat.storage import Base, engine

        Base.metadata.drop_all(bind=engine)
        response = client.get("/health/ready")

        assert response.status_code == 503
        assert "schema" in response.json()["reason"]

    def test_metrics_exposed(self, client):
        client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "v1"})
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "conversations_total" in response.text
