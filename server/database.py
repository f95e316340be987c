"""
Database models and operations for the chat server.

Uses SQLAlchemy with SQLite for user accounts, rooms, conversations and
messages. Message bodies are stored exactly as the client sent them:
base64 ciphertext and IV. The server never sees a key.
"""

import os
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional, List
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from passlib.context import CryptContext

Base = declarative_base()
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

DATABASE_URL = os.environ.get("CIPHERCHAT_DATABASE_URL", "sqlite+aiosqlite:///./chat.db")
MAX_PAGE_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User account and directory entry"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=True)  # base64 SPKI, P-256
    created_at = Column(DateTime, default=_now)
    is_active = Column(Boolean, default=True)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password"""
        return pwd_context.hash(password)

    def to_public_dict(self) -> dict:
        return {
            'id': self.id,
            'username': self.username,
            'displayName': self.display_name,
            'publicKey': self.public_key,
        }


class Room(Base):
    """Anonymous link-shared room; only its public code is known here"""
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=_now)


class Conversation(Base):
    """Two-party conversation; user1_id < user2_id"""
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("user1_id", "user2_id"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    user1_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    user2_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def other_participant(self, user_id: str) -> str:
        return self.user2_id if self.user1_id == user_id else self.user1_id


class Message(Base):
    """Encrypted message in a room or a conversation"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True, index=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True, index=True)
    sender_id = Column(String(64), nullable=False)
    ciphertext = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=_now, index=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'senderId': self.sender_id,
            'ciphertext': self.ciphertext,
            'iv': self.iv,
            'createdAt': self.created_at.isoformat(),
        }


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = DATABASE_URL):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    # Users

    async def create_user(self, username: str, password: str) -> Optional[User]:
        """
        Create a new user account.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)

        Returns:
            Created User object or None if username exists
        """
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            if result.scalar_one_or_none():
                return None

            user = User(
                username=username,
                hashed_password=User.hash_password(password),
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    async def get_user(self, username: str) -> Optional[User]:
        async with self.async_session() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        async with self.async_session() as session:
            return await session.get(User, user_id)

    async def authenticate_user(self, username: str, password: str) -> Optional[User]:
        """
        Authenticate a user.

        Returns:
            User object if authenticated, None otherwise
        """
        user = await self.get_user(username)
        if not user or not user.is_active or not user.verify_password(password):
            return None
        return user

    async def update_user(self, user_id: str, public_key: Optional[str] = None,
                          display_name: Optional[str] = None) -> Optional[User]:
        """Update the caller's published key and/or display name"""
        async with self.async_session() as session:
            user = await session.get(User, user_id)
            if not user:
                return None
            if public_key is not None:
                user.public_key = public_key
            if display_name is not None:
                user.display_name = display_name
            await session.commit()
            await session.refresh(user)
            return user

    async def list_users(self) -> List[User]:
        async with self.async_session() as session:
            result = await session.execute(
                select(User).where(User.is_active == True).order_by(User.username)  # noqa: E712
            )
            return list(result.scalars().all())

    async def search_users(self, query: str, limit: int = 20) -> List[User]:
        pattern = f"%{query}%"
        async with self.async_session() as session:
            result = await session.execute(
                select(User)
                .where(User.is_active == True)  # noqa: E712
                .where(or_(User.username.ilike(pattern), User.display_name.ilike(pattern)))
                .order_by(User.username)
                .limit(limit)
            )
            return list(result.scalars().all())

    # Rooms

    async def create_room(self) -> Room:
        async with self.async_session() as session:
            room = Room(code=secrets.token_urlsafe(16))
            session.add(room)
            await session.commit()
            await session.refresh(room)
            return room

    async def get_room(self, code: str) -> Optional[Room]:
        async with self.async_session() as session:
            result = await session.execute(select(Room).where(Room.code == code))
            return result.scalar_one_or_none()

    # Conversations

    async def create_or_get_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Participant order is normalised so each pair has one conversation"""
        first, second = sorted([user_a, user_b])
        async with self.async_session() as session:
            result = await session.execute(
                select(Conversation).where(
                    Conversation.user1_id == first, Conversation.user2_id == second
                )
            )
            conversation = result.scalar_one_or_none()
            if conversation:
                return conversation

            conversation = Conversation(user1_id=first, user2_id=second)
            session.add(conversation)
            await session.commit()
            await session.refresh(conversation)
            return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self.async_session() as session:
            return await session.get(Conversation, conversation_id)

    async def list_conversations(self, user_id: str) -> List[Conversation]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Conversation)
                .where(or_(Conversation.user1_id == user_id, Conversation.user2_id == user_id))
                .order_by(Conversation.updated_at.desc())
            )
            return list(result.scalars().all())

    # Messages

    async def add_message(self, sender_id: str, ciphertext: str, iv: str,
                          room_id: Optional[int] = None,
                          conversation_id: Optional[str] = None) -> Message:
        async with self.async_session() as session:
            message = Message(
                room_id=room_id,
                conversation_id=conversation_id,
                sender_id=sender_id,
                ciphertext=ciphertext,
                iv=iv,
            )
            session.add(message)
            if conversation_id is not None:
                conversation = await session.get(Conversation, conversation_id)
                if conversation:
                    conversation.updated_at = _now()
            await session.commit()
            await session.refresh(message)
            return message

    async def list_messages(self, room_id: Optional[int] = None,
                            conversation_id: Optional[str] = None,
                            after: Optional[int] = None,
                            limit: int = MAX_PAGE_SIZE) -> List[Message]:
        """
        Messages ordered by creation time ascending.

        Args:
            after: Only return messages with an id greater than this
            limit: Page size, capped at MAX_PAGE_SIZE
        """
        query = select(Message)
        if room_id is not None:
            query = query.where(Message.room_id == room_id)
        else:
            query = query.where(Message.conversation_id == conversation_id)
        if after is not None:
            query = query.where(Message.id > after)
        query = query.order_by(Message.created_at, Message.id).limit(min(limit, MAX_PAGE_SIZE))

        async with self.async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def last_message(self, conversation_id: str) -> Optional[Message]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
