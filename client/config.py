"""Client configuration."""

import os
from dataclasses import dataclass


@dataclass
class ClientConfig:
    """Settings for the chat client."""

    server_url: str = "http://localhost:8000"
    """Base URL of the chat server. Also used as the base of room links."""

    poll_interval: float = 2.0
    """Seconds between message polls for the active view."""

    request_timeout: float = 10.0
    """Client-side timeout for every HTTP request, in seconds."""

    storage_dir: str = "client_data"
    """Directory holding the per-user identity databases."""

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Creates configuration from CIPHERCHAT_* environment variables."""
        defaults = cls()
        return cls(
            server_url=os.environ.get("CIPHERCHAT_SERVER_URL", defaults.server_url),
            poll_interval=float(os.environ.get("CIPHERCHAT_POLL_INTERVAL", defaults.poll_interval)),
            request_timeout=float(os.environ.get("CIPHERCHAT_REQUEST_TIMEOUT", defaults.request_timeout)),
            storage_dir=os.environ.get("CIPHERCHAT_STORAGE_DIR", defaults.storage_dir),
        )
