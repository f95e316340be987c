"""
HTTP collaborators for the chat client.

The server is untrusted: it only ever sees envelopes, encoded public keys,
and room codes. Room keys and plaintext never appear in a request.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, List, Dict

import httpx

from crypto.primitives import EncryptedEnvelope
from .models import MessageRecord

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Network or HTTP failure talking to the server"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.reason_phrase


def _json(response: httpx.Response):
    """Decode a response body, treating non-JSON as a transport failure"""
    try:
        return response.json()
    except ValueError as e:
        raise TransportError(f"Malformed response from {response.request.url.path}",
                             status_code=response.status_code) from e


class ApiClient:
    """
    Thin async wrapper over the server's REST API.
    """

    def __init__(self, server_url: str = "http://localhost:8000", timeout: float = 10.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize API client.

        Args:
            server_url: Base URL of the chat server
            timeout: Per-request timeout in seconds
            http_client: Pre-built client (tests pass one with a mock transport)
        """
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)
        self.token: Optional[str] = None
        self.user_id: Optional[str] = None
        self.username: Optional[str] = None

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request and raise TransportError on any failure.
        """
        try:
            response = await self.http_client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", method, path, e.__class__.__name__)
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            raise TransportError(_detail(response), status_code=response.status_code)
        return response

    async def request_json(self, method: str, path: str, **kwargs):
        """Like request(), returning the decoded JSON body"""
        return _json(await self.request(method, path, **kwargs))

    async def register(self, username: str, password: str) -> Dict:
        response = await self.request("POST", "/api/register",
                                      json={"username": username, "password": password})
        return self._accept_token(_json(response))

    async def login(self, username: str, password: str) -> Dict:
        response = await self.request("POST", "/api/login",
                                      json={"username": username, "password": password})
        return self._accept_token(_json(response))

    def logout(self):
        """Drop the bearer token and the identity it was issued for"""
        self.token = None
        self.user_id = None
        self.username = None

    def _accept_token(self, data: Dict) -> Dict:
        self.token = data["access_token"]
        self.user_id = data["userId"]
        self.username = data["username"]
        return data

    async def me(self) -> Dict:
        return await self.request_json("GET", "/api/auth/me")

    async def list_users(self) -> List[Dict]:
        return (await self.request_json("GET", "/api/users"))["users"]

    async def search_users(self, query: str) -> List[Dict]:
        return await self.request_json("GET", "/api/users/search", params={"q": query})

    async def create_room(self) -> Dict:
        return await self.request_json("POST", "/api/rooms")

    async def get_room(self, code: str) -> Dict:
        return await self.request_json("GET", f"/api/rooms/{code}")

    async def create_conversation(self, user_id: str) -> Dict:
        return await self.request_json("POST", "/api/conversations", json={"userId": user_id})

    async def list_conversations(self) -> List[Dict]:
        return await self.request_json("GET", "/api/conversations")

    async def aclose(self):
        await self.http_client.aclose()


class MessageStore(ABC):
    """Server-side ciphertext store for one chat mode."""

    @abstractmethod
    async def list(self, ref: str, after: Optional[int] = None) -> List[MessageRecord]:
        """List messages newer than `after`, ordered by creation time ascending."""
        ...

    @abstractmethod
    async def create(self, ref: str, envelope: EncryptedEnvelope,
                     sender_id: Optional[str] = None) -> MessageRecord:
        """Store an envelope and return the stored record."""
        ...


class HttpMessageStore(MessageStore):
    """MessageStore over the REST API; subclasses pick the URL family."""

    path_template = ""

    def __init__(self, api: ApiClient):
        self.api = api

    def _path(self, ref: str) -> str:
        return self.path_template.format(ref=ref)

    async def list(self, ref: str, after: Optional[int] = None) -> List[MessageRecord]:
        """
        Fetch records newer than `after`.

        A record with malformed fields is returned as an unreadable stand-in
        so it fails on its own; one without a usable id is dropped.
        """
        params = {"after": after} if after is not None else {}
        items = await self.api.request_json("GET", self._path(ref), params=params)
        if not isinstance(items, list):
            raise TransportError(f"Malformed message list for {ref}")

        records = []
        for item in items:
            try:
                records.append(MessageRecord.from_dict(ref, item))
                continue
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                reason = e.__class__.__name__
            try:
                record_id = int(item['id'])
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping message without a usable id in %s", ref)
                continue
            logger.warning("Message %s in %s is malformed (%s)", record_id, ref, reason)
            records.append(MessageRecord.unreadable(ref, record_id, item))
        return records

    async def create(self, ref: str, envelope: EncryptedEnvelope,
                     sender_id: Optional[str] = None) -> MessageRecord:
        body = envelope.to_dict()
        if sender_id is not None:
            body["senderId"] = sender_id
        data = await self.api.request_json("POST", self._path(ref), json=body)
        try:
            return MessageRecord.from_dict(ref, data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise TransportError(f"Malformed stored message for {ref}") from e


class RoomMessageStore(HttpMessageStore):
    """Anonymous room messages; the sender id is an ephemeral per-session id."""
    path_template = "/api/rooms/{ref}/messages"


class ConversationMessageStore(HttpMessageStore):
    """Authenticated conversation messages; the server sets the sender id."""
    path_template = "/api/conversations/{ref}/messages"


class IdentityDirectory(ABC):
    """Where users publish and look up encoded public keys."""

    @abstractmethod
    async def get_public_key(self, user_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def publish_public_key(self, encoded_key: str) -> bool:
        ...


class HttpIdentityDirectory(IdentityDirectory):

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_public_key(self, user_id: str) -> Optional[str]:
        """Return the user's published key, or None if absent."""
        try:
            data = await self.api.request_json("GET", f"/api/users/{user_id}")
        except TransportError as e:
            if e.status_code == 404:
                return None
            raise
        if not isinstance(data, dict):
            raise TransportError(f"Malformed directory entry for {user_id}")
        return data.get("publicKey")

    async def publish_public_key(self, encoded_key: str) -> bool:
        data = await self.api.request_json("PATCH", "/api/auth/me", json={"publicKey": encoded_key})
        return isinstance(data, dict) and data.get("publicKey") == encoded_key
