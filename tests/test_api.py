"""Tests for the read-only chat, contact and search endpoints.

Route helpers are patched; no database is needed.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from chatvault.api.factory import create_app


@pytest.fixture
def client():
    return TestClient(create_app())


CHAT = {"id": 1, "chat_id": "5511999990001@s.whatsapp.net", "kind": "private", "name": "Alice"}


class TestChats:
    def test_list_envelope(self, client):
        with patch("chatvault.api.routes.chats._list_chats", return_value=([CHAT], 51)) as mock_list:
            response = client.get("/chats", params={"page": 2, "limit": 25, "search": "ali"})

        assert response.status_code == 200
        assert response.json() == {
            "data": [CHAT],
            "pagination": {"page": 2, "limit": 25, "total": 51, "totalPages": 3},
        }
        kwargs = mock_list.call_args.kwargs
        assert kwargs["search"] == "ali"
        assert kwargs["archived"] is False
        assert kwargs["page"].offset == 25

    def test_limit_capped(self, client):
        response = client.get("/chats", params={"limit": 500})
        assert response.status_code == 422

    def test_detail(self, client):
        with patch("chatvault.api.routes.chats._get_chat", return_value={**CHAT, "group_metadata": None}):
            response = client.get("/chats/1")

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice"

    def test_detail_not_found(self, client):
        with patch("chatvault.api.routes.chats._get_chat", return_value=None):
            response = client.get("/chats/99")

        assert response.status_code == 404
        assert response.json()["detail"] == "Chat not found"

    def test_messages(self, client):
        rows = [{"id": 10, "message_id": "M1", "body": "hi"}]
        with patch("chatvault.api.routes.chats._list_messages", return_value=(rows, 1)) as mock_list:
            response = client.get("/chats/1/messages", params={"before": "2024-01-01T00:00:00Z"})

        assert response.status_code == 200
        assert response.json()["pagination"]["totalPages"] == 1
        assert mock_list.call_args.args == (1,)
        assert mock_list.call_args.kwargs["before"].year == 2024

    def test_empty_list(self, client):
        with patch("chatvault.api.routes.chats._list_chats", return_value=([], 0)):
            response = client.get("/chats")
        assert response.json()["pagination"]["totalPages"] == 0


class TestContacts:
    def test_list(self, client):
        contact = {"id": 3, "contact_id": "5511999990001@s.whatsapp.net", "name": "Alice"}
        with patch("chatvault.api.routes.contacts._list_contacts", return_value=([contact], 1)):
            response = client.get("/contacts")

        assert response.status_code == 200
        assert response.json()["data"] == [contact]

    def test_not_found(self, client):
        with patch("chatvault.api.routes.contacts._get_contact", return_value=None):
            response = client.get("/contacts/5")
        assert response.status_code == 404


class TestMessages:
    def test_detail_with_chat_and_quote(self, client):
        message = {
            "id": 11,
            "message_id": "M2",
            "body": "sure",
            "quoted_message_pk": 10,
            "chat": {"id": 1, "chat_id": CHAT["chat_id"], "kind": "private", "name": "Alice"},
            "quoted_message": {"id": 10, "message_id": "M1", "body": "lunch?"},
        }
        with patch("chatvault.api.routes.messages._get_message", return_value=message) as mock_get:
            response = client.get("/messages/11")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["chat"]["name"] == "Alice"
        assert data["quoted_message"]["message_id"] == "M1"
        assert mock_get.call_args.args == (11,)

    def test_not_found(self, client):
        with patch("chatvault.api.routes.messages._get_message", return_value=None):
            response = client.get("/messages/99")

        assert response.status_code == 404
        assert response.json()["detail"] == "Message not found"

    def test_invalid_id(self, client):
        response = client.get("/messages/0")
        assert response.status_code == 422


class TestSearch:
    def test_query_required(self, client):
        response = client.get("/search", params={"q": "   "})
        assert response.status_code == 400

    def test_filters_passed(self, client):
        with patch("chatvault.api.routes.search._search", return_value=([], 0)) as mock_search:
            response = client.get(
                "/search",
                params={"q": " lunch plans ", "chatId": 4, "messageType": "image"},
            )

        assert response.status_code == 200
        assert mock_search.call_args.args == ("lunch plans",)
        kwargs = mock_search.call_args.kwargs
        assert kwargs["chat_pk"] == 4
        assert kwargs["kind"] == "image"

    def test_unknown_message_type(self, client):
        response = client.get("/search", params={"q": "x", "messageType": "hologram"})
        assert response.status_code == 422
