#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- User registration and login
- Device identity keys, published to the server's directory
- Anonymous rooms whose key travels only in the link fragment
- Two-party conversations keyed by P-256 ECDH
"""

import asyncio
import logging
import os
import sys
import getpass
from typing import Optional, Dict, List

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.primitives import CryptoError, IdentityCorruptError
from crypto.room_key import generate_room_key, build_room_link, parse_room_link
from client.api import (
    ApiClient,
    ConversationMessageStore,
    HttpIdentityDirectory,
    RoomMessageStore,
    TransportError,
)
from client.config import ClientConfig
from client.models import ChatMessage
from client.storage import Identity, IdentityKeyStore, LocalStorage
from client.sync import ChatTarget, MessageSync

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /room new - Open a new room and print its secret link
  /room join <link> - Join a room from its link
  /chat <username> - Start chat with user
  /conversations - List your conversations
  /users - List all users
  /search <text> - Search users
  /refresh - Poll the current chat now
  /leave - Leave current chat
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted chat client.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize chat client.

        Args:
            config: Client settings; defaults come from the environment
        """
        self.config = config or ClientConfig.from_env()
        self.api = ApiClient(self.config.server_url, timeout=self.config.request_timeout)
        self.directory = HttpIdentityDirectory(self.api)
        self.room_store = RoomMessageStore(self.api)
        self.conversation_store = ConversationMessageStore(self.api)
        self.storage: Optional[LocalStorage] = None
        self.identity: Optional[Identity] = None
        self.sync = MessageSync(
            poll_interval=self.config.poll_interval,
            on_update=self._render,
            on_error=self._on_sync_error,
        )
        self.running = False
        self.pending_input = ""
        self.usernames: Dict[str, str] = {}

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new user account.

        Returns:
            True if successful
        """
        try:
            await self.api.register(username, password)
        except TransportError as e:
            print(f"Registration failed: {e}")
            return False

        if not await self._start_session(username):
            return False
        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account.

        Returns:
            True if successful
        """
        try:
            await self.api.login(username, password)
        except TransportError as e:
            print(f"Login failed: {e}")
            return False

        if not await self._start_session(username):
            return False
        print(f"Login successful! Welcome back, {username}")
        return True

    async def _start_session(self, username: str) -> bool:
        """Load this device's identity and make sure the server has its public key"""
        self._end_session()
        self.storage = LocalStorage.for_user(username, self.config.storage_dir)
        try:
            self.identity = IdentityKeyStore(self.storage).load_or_create()
        except IdentityCorruptError as e:
            print(f"Local identity for {username} is corrupt: {e}")
            print(f"Existing conversations cannot be decrypted. Remove {self.storage.path} "
                  "only if you accept losing them.")
            self._end_session()
            self.api.logout()
            return False

        try:
            me = await self.api.me()
            if me.get("publicKey") != self.identity.encoded_public_key:
                await self.directory.publish_public_key(self.identity.encoded_public_key)
                logger.info("Published device public key")
        except TransportError as e:
            print(f"Failed to publish public key: {e}")
            self._end_session()
            self.api.logout()
            return False
        return True

    def _end_session(self):
        """Forget the loaded identity and close its storage"""
        self.identity = None
        if self.storage:
            self.storage.close()
            self.storage = None

    async def open_new_room(self):
        """Create a room on the server and print the link that carries its key"""
        try:
            room = await self.api.create_room()
        except TransportError as e:
            print(f"Failed to create room: {e}")
            return

        room_key = generate_room_key()
        link = build_room_link(self.config.server_url, room["code"], room_key)
        print("Room created. This link contains the encryption key. Share it privately:")
        print(f"  {link}")
        self._enter(ChatTarget.room(room["code"], room_key, self.room_store))

    async def join_room(self, link: str):
        """Join a room from its link; a bad key sends us back to the lobby"""
        try:
            code, room_key = parse_room_link(link)
        except CryptoError as e:
            print(f"Invalid room link: {e}")
            self._leave()
            return

        try:
            await self.api.get_room(code)
        except TransportError as e:
            print(f"Cannot join room: {e}")
            return

        self._enter(ChatTarget.room(code, room_key, self.room_store))

    async def start_chat(self, peer_username: str):
        """
        Start or continue a chat with a user.

        Args:
            peer_username: Username to chat with
        """
        try:
            users = await self.api.list_users()
        except TransportError as e:
            print(f"Failed to look up {peer_username}: {e}")
            return

        self._remember_users(users)
        peer = next((u for u in users if u["username"] == peer_username), None)
        if not peer:
            print(f"No such user: {peer_username}")
            return
        if not peer.get("publicKey"):
            print(f"{peer_username} has not published an encryption key yet")
            return

        try:
            conversation = await self.api.create_conversation(peer["id"])
        except TransportError as e:
            print(f"Failed to open conversation: {e}")
            return

        self._enter(ChatTarget.conversation(
            conversation["id"], peer["id"], self.identity, self.directory,
            self.conversation_store, label=peer_username,
        ))

    def _enter(self, target: ChatTarget):
        self.sync.switch(target)
        print(f"Chatting in {target.label}. Type '/leave' to leave chat, '/help' for commands.")

    def _leave(self):
        if self.sync.target is not None:
            print(f"Left {self.sync.target.label}")
        self.sync.switch(None)

    async def send_message(self, message: str):
        """
        Send an encrypted message to the current chat.

        On failure the text is kept so the next prompt starts with it.
        """
        try:
            await self.sync.send(message)
        except TransportError as e:
            print(f"Failed to send message: {e}")
            self.pending_input = message
        except CryptoError as e:
            print(f"Cannot encrypt for this chat: {e}")
            self.pending_input = message

    def _sender_name(self, message: ChatMessage) -> str:
        sender = message.record.sender_id
        if sender in (self.api.user_id, self.sync.own_sender_id):
            return "You"
        return self.usernames.get(sender, sender[:8])

    def _render(self, messages: List[ChatMessage]):
        for message in messages:
            timestamp = message.record.created_at.strftime("%H:%M")
            print(f"[{timestamp}] {self._sender_name(message)}: {message.display_text()}")

    def _on_sync_error(self, error: Exception):
        print(f"\n[Chat closed: {error}]")
        self.sync.switch(None)

    def _remember_users(self, users: List[Dict]):
        for user in users:
            self.usernames[user["id"]] = user["username"]

    async def list_users(self):
        """List all registered users"""
        try:
            users = await self.api.list_users()
        except TransportError as e:
            print(f"Failed to list users: {e}")
            return
        self._remember_users(users)
        print("Registered users:")
        for user in users:
            marker = "" if user.get("publicKey") else " (no key)"
            print(f"  - {user['username']}{marker}")

    async def search_users(self, query: str):
        try:
            users = await self.api.search_users(query)
        except TransportError as e:
            print(f"Search failed: {e}")
            return
        self._remember_users(users)
        for user in users:
            print(f"  - {user['username']}")

    async def list_conversations(self):
        try:
            conversations = await self.api.list_conversations()
        except TransportError as e:
            print(f"Failed to list conversations: {e}")
            return
        print("Conversations:")
        for conversation in conversations:
            other = conversation.get("otherUser") or {}
            print(f"  - {other.get('username', '?')}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()

        print()
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    if self.sync.target:
                        prompt_text = f"[{self.sync.target.label}] > "
                    else:
                        prompt_text = "> "

                    default, self.pending_input = self.pending_input, ""
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text, default=default)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.sync.target:
                        await self.send_message(user_input)
                    else:
                        print("No active chat. Use /room or /chat <username> to start.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            await self.close()

    async def close(self):
        await self.sync.close()
        await self.api.aclose()
        self._end_session()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        if cmd == "/room" and len(parts) == 2 and parts[1] == "new":
            await self.open_new_room()
        elif cmd == "/room" and len(parts) == 3 and parts[1] == "join":
            await self.join_room(parts[2])
        elif cmd == "/chat" and len(parts) == 2:
            await self.start_chat(parts[1])
        elif cmd == "/leave":
            self._leave()
        elif cmd == "/refresh":
            try:
                await self.sync.refresh()
            except (TransportError, CryptoError) as e:
                print(f"Refresh failed: {e}")
        elif cmd == "/users":
            await self.list_users()
        elif cmd == "/search" and len(parts) >= 2:
            await self.search_users(" ".join(parts[1:]))
        elif cmd == "/conversations":
            await self.list_conversations()
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(level=os.environ.get("CIPHERCHAT_LOG_LEVEL", "WARNING").upper())
    client = ChatClient()

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.close()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()

    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
