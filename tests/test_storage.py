"""
Tests for store error translation.
"""

import pytest
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, ProgrammingError

from marketchat.errors import StoreUnavailable, StoreUnreachable
from marketchat.storage import translate_store_errors, utc_now


class FakePgError(Exception):
    pgcode = "42P01"


@pytest.mark.parametrize("error", [
    OperationalError("SELECT", {}, Exception("no such table: chat_conversations")),
    ProgrammingError("SELECT", {}, Exception("permission denied for schema public")),
    OperationalError("SELECT", {}, FakePgError("relation missing")),
])
def test_schema_problems_are_unavailable(error):
    with pytest.raises(StoreUnavailable):
        with translate_store_errors():
            raise error


@pytest.mark.parametrize("error", [
    OperationalError("SELECT", {}, Exception("could not connect to server: Connection refused")),
    InterfaceError("SELECT", {}, Exception("connection already closed")),
])
def test_connectivity_problems_are_unreachable(error):
    with pytest.raises(StoreUnreachable):
        with translate_store_errors():
            raise error


def test_integrity_errors_pass_through():
    with pytest.raises(IntegrityError):
        with translate_store_errors():
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))


def test_unreachable_is_retryable_over_http(client, monkeypatch):
    from marketchat import conversations

    def down(db, buyer_id):
        raise OperationalError("SELECT", {}, Exception("server closed the connection unexpectedly"))

    monkeypatch.setattr(conversations.identity, "buyer_exists", down)

    response = client.post("/conversations", json={"buyer_id": "b1", "vendor_id": "v1"})

    assert response.status_code == 503
    assert response.json()["code"] == "store_unreachable"
    assert response.headers["Retry-After"] == "5"


def test_timestamps_sort_chronologically():
    first = utc_now()
    second = utc_now()
    assert len(first) == len(second) == 27
    assert first <= second
