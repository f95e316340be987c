"""
FastAPI server for end-to-end encrypted chat application.

This server:
- Handles user registration and authentication
- Publishes users' encoded public keys (the identity directory)
- Creates anonymous rooms and two-party conversations
- Stores message envelopes it cannot read, returned oldest first
"""

import logging
from typing import Optional, List
from datetime import timedelta
from fastapi import FastAPI, HTTPException, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from contextlib import asynccontextmanager

from .database import Database, Conversation, MAX_PAGE_SIZE
from .auth import create_access_token, require_user_id, Token, ACCESS_TOKEN_EXPIRE_MINUTES

logger = logging.getLogger(__name__)


# Pydantic models for API
class UserCredentials(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=8)


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_key: Optional[str] = Field(default=None, alias="publicKey")
    display_name: Optional[str] = Field(default=None, alias="displayName", min_length=1, max_length=100)


class ConversationCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")


class EnvelopeIn(BaseModel):
    ciphertext: str
    iv: str


class RoomEnvelopeIn(EnvelopeIn):
    model_config = ConfigDict(populate_by_name=True)

    sender_id: str = Field(alias="senderId", min_length=1, max_length=64)


db = Database()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await db.create_tables()
    logger.info("Database initialized")
    yield
    logger.info("Server shutting down")


app = FastAPI(
    title="CipherChat Server",
    description="Ciphertext-only message store and public key directory",
    version="1.0.0",
    lifespan=lifespan
)


def _issue_token(user) -> Token:
    access_token = create_access_token(
        data={"sub": user.id},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return Token(access_token=access_token, token_type="bearer", user_id=user.id, username=user.username)


async def _conversation_for(conversation_id: str, user_id: str) -> Conversation:
    conversation = await db.get_conversation(conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not conversation.has_participant(user_id):
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


async def _conversation_dict(conversation: Conversation, user_id: str) -> dict:
    other = await db.get_user_by_id(conversation.other_participant(user_id))
    last = await db.last_message(conversation.id)
    return {
        'id': conversation.id,
        'otherUser': other.to_public_dict() if other else None,
        'lastMessage': last.to_dict() if last else None,
        'createdAt': conversation.created_at.isoformat(),
        'updatedAt': conversation.updated_at.isoformat(),
    }


# Auth

@app.post("/api/register", response_model=Token)
async def register(credentials: UserCredentials):
    """Register a new user account and return a JWT token"""
    user = await db.create_user(credentials.username, credentials.password)
    if not user:
        raise HTTPException(status_code=400, detail="Username already exists")
    return _issue_token(user)


@app.post("/api/login", response_model=Token)
async def login(credentials: UserCredentials):
    """Authenticate a user and return JWT token"""
    user = await db.authenticate_user(credentials.username, credentials.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return _issue_token(user)


@app.get("/api/auth/me")
async def get_me(user_id: str = Depends(require_user_id)):
    user = await db.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user.to_public_dict()


@app.patch("/api/auth/me")
async def update_me(update: ProfileUpdate, user_id: str = Depends(require_user_id)):
    """
    Update the caller's profile.

    This is where a device publishes its encoded public key. The server keeps
    it as an opaque string.
    """
    user = await db.update_user(user_id, public_key=update.public_key, display_name=update.display_name)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user.to_public_dict()


# Identity directory

@app.get("/api/users")
async def list_users(user_id: str = Depends(require_user_id)):
    """List all registered users"""
    users = await db.list_users()
    return {"users": [u.to_public_dict() for u in users]}


@app.get("/api/users/search")
async def search_users(q: str = Query(default=""), user_id: str = Depends(require_user_id)):
    if len(q) < 3:
        raise HTTPException(status_code=400, detail="Search query must be at least 3 characters")
    users = await db.search_users(q)
    return [u.to_public_dict() for u in users if u.id != user_id]


@app.get("/api/users/{target_id}")
async def get_user(target_id: str, user_id: str = Depends(require_user_id)):
    """Get a user's directory entry, including their public key"""
    user = await db.get_user_by_id(target_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.to_public_dict()


# Conversations

@app.get("/api/conversations")
async def list_conversations(user_id: str = Depends(require_user_id)):
    conversations = await db.list_conversations(user_id)
    return [await _conversation_dict(c, user_id) for c in conversations]


@app.post("/api/conversations", status_code=201)
async def create_conversation(body: ConversationCreate, user_id: str = Depends(require_user_id)):
    """Create or get the conversation between the caller and another user"""
    if body.user_id == user_id:
        raise HTTPException(status_code=400, detail="Cannot create conversation with yourself")
    if not await db.get_user_by_id(body.user_id):
        raise HTTPException(status_code=404, detail="User not found")

    conversation = await db.create_or_get_conversation(user_id, body.user_id)
    return await _conversation_dict(conversation, user_id)


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(require_user_id)):
    conversation = await _conversation_for(conversation_id, user_id)
    return await _conversation_dict(conversation, user_id)


@app.get("/api/conversations/{conversation_id}/messages")
async def list_conversation_messages(
    conversation_id: str,
    after: Optional[int] = None,
    limit: int = Query(default=50, ge=1),
    user_id: str = Depends(require_user_id),
) -> List[dict]:
    await _conversation_for(conversation_id, user_id)
    messages = await db.list_messages(conversation_id=conversation_id, after=after,
                                      limit=min(limit, MAX_PAGE_SIZE))
    return [m.to_dict() for m in messages]


@app.post("/api/conversations/{conversation_id}/messages", status_code=201)
async def create_conversation_message(
    conversation_id: str,
    envelope: EnvelopeIn,
    user_id: str = Depends(require_user_id),
):
    """Store an encrypted message; the sender is taken from the token"""
    await _conversation_for(conversation_id, user_id)
    message = await db.add_message(user_id, envelope.ciphertext, envelope.iv,
                                   conversation_id=conversation_id)
    return message.to_dict()


# Rooms

@app.post("/api/rooms", status_code=201)
async def create_room():
    """Create a room. The client generates the room key; the server only picks a code."""
    room = await db.create_room()
    return {'id': room.id, 'code': room.code, 'createdAt': room.created_at.isoformat()}


async def _room_for(code: str):
    room = await db.get_room(code)
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@app.get("/api/rooms/{code}")
async def get_room(code: str):
    room = await _room_for(code)
    return {'id': room.id, 'code': room.code, 'createdAt': room.created_at.isoformat()}


@app.get("/api/rooms/{code}/messages")
async def list_room_messages(code: str, after: Optional[int] = None,
                             limit: int = Query(default=MAX_PAGE_SIZE, ge=1)) -> List[dict]:
    room = await _room_for(code)
    messages = await db.list_messages(room_id=room.id, after=after, limit=min(limit, MAX_PAGE_SIZE))
    return [m.to_dict() for m in messages]


@app.post("/api/rooms/{code}/messages", status_code=201)
async def create_room_message(code: str, envelope: RoomEnvelopeIn):
    room = await _room_for(code)
    message = await db.add_message(envelope.sender_id, envelope.ciphertext, envelope.iv,
                                   room_id=room.id)
    return message.to_dict()


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
