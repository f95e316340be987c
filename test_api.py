#!/usr/bin/env python3
"""
Tests for the HTTP collaborators, against a mock transport and against the
real server app in-process.
"""

import asyncio
import json

import httpx
import pytest

import server.main
from server.database import Database
from client.api import (
    ApiClient,
    ConversationMessageStore,
    HttpIdentityDirectory,
    RoomMessageStore,
    TransportError,
)
from client.config import ClientConfig
from client.storage import IdentityKeyStore, LocalStorage
from client.models import Decrypted, Failed
from client.sync import ChatTarget, MessageSync, SyncState
from crypto.primitives import encrypt_envelope
from crypto.room_key import generate_room_key


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("CIPHERCHAT_SERVER_URL", "https://chat.example")
    monkeypatch.setenv("CIPHERCHAT_POLL_INTERVAL", "0.5")
    monkeypatch.delenv("CIPHERCHAT_STORAGE_DIR", raising=False)

    config = ClientConfig.from_env()
    assert config.server_url == "https://chat.example"
    assert config.poll_interval == 0.5
    assert config.storage_dir == ClientConfig().storage_dir


def _mock_api(handler) -> ApiClient:
    http_client = httpx.AsyncClient(base_url="http://chat.test", transport=httpx.MockTransport(handler))
    return ApiClient("http://chat.test", http_client=http_client)


def test_http_error_becomes_transport_error():
    def handler(request):
        return httpx.Response(500, json={"detail": "database on fire"})

    async def scenario():
        api = _mock_api(handler)
        with pytest.raises(TransportError) as info:
            await api.create_room()
        assert info.value.status_code == 500
        assert "database on fire" in str(info.value)
        await api.aclose()

    asyncio.run(scenario())


def test_connection_error_becomes_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario():
        api = _mock_api(handler)
        with pytest.raises(TransportError) as info:
            await RoomMessageStore(api).list("abc")
        assert info.value.status_code is None
        await api.aclose()

    asyncio.run(scenario())


def test_directory_maps_missing_user_to_none():
    def handler(request):
        if request.url.path == "/api/users/ghost":
            return httpx.Response(404, json={"detail": "User not found"})
        if request.url.path == "/api/users/nokey":
            return httpx.Response(200, json={"id": "nokey", "username": "n", "publicKey": None})
        return httpx.Response(503, json={"detail": "unavailable"})

    async def scenario():
        api = _mock_api(handler)
        directory = HttpIdentityDirectory(api)
        assert await directory.get_public_key("ghost") is None
        assert await directory.get_public_key("nokey") is None
        with pytest.raises(TransportError):
            await directory.get_public_key("anyone")
        await api.aclose()

    asyncio.run(scenario())


def test_message_store_requests():
    seen = []
    envelope = encrypt_envelope("hi", generate_room_key())

    def handler(request):
        seen.append(request)
        record = {"id": 7, "senderId": "s1", "createdAt": "2024-01-01T12:00:00",
                  **envelope.to_dict()}
        if request.method == "GET":
            return httpx.Response(200, json=[record])
        return httpx.Response(201, json=record)

    async def scenario():
        api = _mock_api(handler)
        api.token = "t0ken"

        records = await RoomMessageStore(api).list("abc", after=3)
        assert records[0].id == 7 and records[0].envelope == envelope
        assert seen[-1].url.path == "/api/rooms/abc/messages"
        assert seen[-1].url.params["after"] == "3"
        assert seen[-1].headers["Authorization"] == "Bearer t0ken"

        await RoomMessageStore(api).create("abc", envelope, sender_id="s1")
        assert json.loads(seen[-1].content) == {**envelope.to_dict(), "senderId": "s1"}

        await ConversationMessageStore(api).create("conv1", envelope)
        assert seen[-1].url.path == "/api/conversations/conv1/messages"
        assert json.loads(seen[-1].content) == envelope.to_dict()
        await api.aclose()

    asyncio.run(scenario())


def test_malformed_record_fails_alone():
    """A record missing its IV renders as failed; polling carries on"""
    key = generate_room_key()
    good = {"id": 2, "senderId": "s2", "createdAt": "2024-01-01T12:00:02",
            **encrypt_envelope("hello", key).to_dict()}
    broken = {"id": 1, "senderId": "s1", "createdAt": "2024-01-01T12:00:01", "ciphertext": "AAAA"}
    calls = []

    def handler(request):
        calls.append(request)
        items = [broken] if len(calls) == 1 else [broken, good]
        after = request.url.params.get("after")
        if after is not None:
            items = [item for item in items if item["id"] > int(after)]
        return httpx.Response(200, json=items)

    async def scenario():
        api = _mock_api(handler)
        errors = []
        sync = MessageSync(poll_interval=0.01, on_error=errors.append)
        sync.switch(ChatTarget.room("abc", key, RoomMessageStore(api)))
        for _ in range(200):
            if len(sync.messages) == 2:
                break
            await asyncio.sleep(0.01)

        assert len(calls) > 1, "Polling stopped after the malformed record"
        assert [m.id for m in sync.messages] == [1, 2]
        assert isinstance(sync.messages[0].content, Failed)
        assert sync.messages[1].content == Decrypted("hello")
        assert errors == []
        assert sync.state is not SyncState.STOPPED
        await sync.close()
        await api.aclose()

    asyncio.run(scenario())


def test_message_list_parsing_edge_cases():
    key = generate_room_key()
    good = {"id": 5, "senderId": "s", "createdAt": "2024-01-01T12:00:00+02:00",
            **encrypt_envelope("ok", key).to_dict()}
    bodies = [
        [{"senderId": "s", "ciphertext": "AAAA", "iv": "AAAA"}, "junk", good],
        {"not": "a list"},
    ]

    def handler(request):
        body = bodies.pop(0) if bodies else None
        if body is None:
            return httpx.Response(200, content=b"<html>proxy error</html>")
        return httpx.Response(200, json=body)

    async def scenario():
        api = _mock_api(handler)
        store = RoomMessageStore(api)

        records = await store.list("abc")
        assert [r.id for r in records] == [5], "Records without an id should be dropped"
        assert records[0].created_at.tzinfo is None
        assert records[0].created_at.hour == 10

        with pytest.raises(TransportError):
            await store.list("abc")
        with pytest.raises(TransportError):
            await store.list("abc")
        await api.aclose()

    asyncio.run(scenario())


def test_conversation_over_server(tmp_path, monkeypatch):
    """Two clients exchange a message; the server only ever holds ciphertext"""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    monkeypatch.setattr(server.main, "db", db)

    def _api() -> ApiClient:
        transport = httpx.ASGITransport(app=server.main.app)
        return ApiClient("http://chat.test",
                         http_client=httpx.AsyncClient(base_url="http://chat.test", transport=transport))

    async def scenario():
        await db.create_tables()
        alice_api, bob_api = _api(), _api()
        alice_storage, bob_storage = LocalStorage(), LocalStorage()

        await alice_api.register("alice", "correct horse")
        await bob_api.register("bob", "correct horse")
        alice = IdentityKeyStore(alice_storage).load_or_create()
        bob = IdentityKeyStore(bob_storage).load_or_create()
        assert await HttpIdentityDirectory(alice_api).publish_public_key(alice.encoded_public_key)
        assert await HttpIdentityDirectory(bob_api).publish_public_key(bob.encoded_public_key)

        conversation = await alice_api.create_conversation(bob_api.user_id)

        alice_sync = MessageSync(poll_interval=3600)
        alice_sync.switch(ChatTarget.conversation(
            conversation["id"], bob_api.user_id, alice,
            HttpIdentityDirectory(alice_api), ConversationMessageStore(alice_api)))
        sent = await alice_sync.send("meet at noon")
        assert sent.record.sender_id == alice_api.user_id

        bob_sync = MessageSync(poll_interval=3600)
        bob_sync.switch(ChatTarget.conversation(
            conversation["id"], alice_api.user_id, bob,
            HttpIdentityDirectory(bob_api), ConversationMessageStore(bob_api)))
        await bob_sync.refresh()
        assert [m.content.plaintext for m in bob_sync.messages] == ["meet at noon"]

        stored = await db.list_messages(conversation_id=conversation["id"])
        assert "meet at noon" not in stored[0].ciphertext

        for sync in (alice_sync, bob_sync):
            await sync.close()
        for api in (alice_api, bob_api):
            await api.aclose()
        alice_storage.close()
        bob_storage.close()
        await db.dispose()

    asyncio.run(scenario())
