#!/usr/bin/env python3
"""
CLI Client for the End-to-End Encrypted Relay

Provides a command-line interface for:
- Registration and login against the relay
- Signed ephemeral key exchange with other users
- Encrypted messaging over established sessions
- Encrypted file upload and download
"""

import asyncio
import getpass
import mimetypes
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee.exceptions import CryptoError, DerivationError, NetworkError
from client.config import Settings, configure_logging, settings
from client.messenger import IncomingMessage, SecureMessenger
from client.relay import RelayClient
from client.storage import SqliteStateStore

HELP = """Commands:
  /exchange <username>  - Start a key exchange with a user
  /sessions             - List key exchange sessions
  /trust <username>     - Accept a changed signing key for a user
  /chat <username>      - Chat over the newest ready session with a user
  /send <text>          - Send a message in the current chat
  /upload <path>        - Send an encrypted file in the current chat
  /files                - List files shared with you
  /download <fileId> [dir] - Download and decrypt a shared file
  /exit                 - Leave the current chat
  /quit                 - Quit application"""


class ChatClient:
    """
    Interactive front end for SecureMessenger.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.relay = RelayClient(settings.RELAY_URL, timeout=settings.HTTP_TIMEOUT)
        self.username: Optional[str] = None
        self.storage: Optional[SqliteStateStore] = None
        self.messenger: Optional[SecureMessenger] = None
        self.current_chat: Optional[str] = None
        self.current_session: Optional[str] = None
        self.running = False

    def _open(self, username: str, password: str):
        self.username = username
        self.storage = SqliteStateStore(username, self.settings.STORAGE_DIR, passphrase=password)
        self.messenger = SecureMessenger(
            username, self.storage, self.relay,
            freshness_ms=self.settings.FRESHNESS_MS,
            chunk_size=self.settings.CHUNK_SIZE,
            on_message=self._show_message,
            on_session=self._show_session,
        )
        return self.messenger.identity.ensure_identity_keys(username)

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new account and log in.

        Returns:
            True if successful
        """
        try:
            public_key = self._open(username, password)
            await self.relay.register(username, password, public_key)
            await self.relay.login(username, password, public_key)
        except CryptoError as e:
            print(f"Registration failed: {e}")
            self._close_storage()
            return False
        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account, republishing the local signing key.

        Returns:
            True if successful
        """
        try:
            public_key = self._open(username, password)
            await self.relay.login(username, password, public_key)
        except CryptoError as e:
            print(f"Login failed: {e}")
            self._close_storage()
            return False
        print(f"Login successful! Welcome back, {username}")
        return True

    def _close_storage(self):
        if self.storage:
            self.storage.close()
            self.storage = None

    def _show_message(self, message: IncomingMessage):
        timestamp = datetime.fromtimestamp(message.timestamp / 1000).strftime("%H:%M")
        if message.session_id == self.current_session:
            print(f"[{timestamp}] {message.sender}: {message.text}")
        else:
            print(f"[New message from {message.sender}]: {message.text}")

    def _show_session(self, session_id: str, peer: str):
        print(f"[Secure session with {peer} ready: {session_id}]")

    async def start_exchange(self, peer: str):
        session_id = await self.messenger.start_exchange(peer)
        print(f"Key exchange with {peer} started (session {session_id})")

    def list_sessions(self):
        sessions = self.messenger.sessions()
        if not sessions:
            print("No key exchange sessions")
            return
        print("Sessions:")
        for entry in sessions:
            marker = "*" if entry["ready"] else " "
            print(f" {marker} {entry['sessionId']}  {entry['peer']}  {entry['status']}")

    def start_chat(self, peer: str):
        session_id = self.messenger.session_for_peer(peer)
        if session_id is None:
            print(f"No secure session with {peer}. Use /exchange {peer} first.")
            return
        self.current_chat = peer
        self.current_session = session_id
        print(f"Chatting with {peer}. Type '/exit' to leave chat, '/help' for commands.")

    async def send_message(self, text: str):
        if not self.current_session:
            print("No active chat. Use /chat <username> to start.")
            return
        await self.messenger.send_text(self.current_session, text)

    async def upload(self, path: str):
        if not self.current_session:
            print("No active chat. Use /chat <username> to start.")
            return
        file_path = Path(path).expanduser()
        data = file_path.read_bytes()
        mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        file_id = await self.messenger.upload_file(self.current_session, file_path.name, data, mime_type)
        print(f"Sent {file_path.name} ({len(data)} bytes) as {file_id}")

    async def list_files(self):
        files = await self.messenger.list_files()
        if not files:
            print("No files shared with you")
            return
        print("Files:")
        for f in files:
            print(f"  - {f.file_id}  {f.original_name}  {f.total_size} bytes")

    async def download(self, file_id: str, target_dir: str = "."):
        transfer, data = await self.messenger.download_file(file_id)
        target = Path(target_dir).expanduser() / Path(transfer.original_name).name
        target.write_bytes(data)
        print(f"Saved {target} ({len(data)} bytes)")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        self.messenger.start(
            exchange_interval=self.settings.EXCHANGE_POLL_SECONDS,
            message_interval=self.settings.MESSAGE_POLL_SECONDS,
            initial_delay=self.settings.POLL_INITIAL_DELAY,
        )
        session = PromptSession()
        print()
        print(HELP)
        print()

        try:
            while self.running:
                try:
                    prompt_text = f"[{self.current_chat}] > " if self.current_chat else "> "
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue
                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        await self.send_message(user_input)

                except (KeyboardInterrupt, EOFError):
                    break
                except DerivationError as e:
                    print(f"Not ready: {e}")
                except NetworkError as e:
                    print(f"Relay error: {e}")
                except (CryptoError, OSError, ValueError) as e:
                    print(f"Error: {e}")
        finally:
            self.running = False
            await self.messenger.stop()
            await self.relay.close()
            self._close_storage()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) == 2 else ""

        if cmd == "/exchange" and arg:
            await self.start_exchange(arg)
        elif cmd == "/sessions":
            self.list_sessions()
        elif cmd == "/trust" and arg:
            self.messenger.trust_new_key(arg)
            print(f"Pinned key for {arg} cleared; the next exchange pins the key the relay publishes")
        elif cmd == "/chat" and arg:
            self.start_chat(arg)
        elif cmd == "/send" and arg:
            await self.send_message(arg)
        elif cmd == "/upload" and arg:
            await self.upload(arg)
        elif cmd == "/files":
            await self.list_files()
        elif cmd == "/download" and arg:
            download_args = arg.split(maxsplit=1)
            await self.download(*download_args)
        elif cmd == "/exit":
            self.current_chat = None
            self.current_session = None
            print("Exited chat")
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    configure_logging(settings.LOG_LEVEL)
    client = ChatClient(settings)

    print("=" * 50)
    print("End-to-End Encrypted Relay Client")
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
            await client.relay.close()
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
