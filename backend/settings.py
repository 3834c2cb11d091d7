"""
Purpose: Connection settings for the hosted backend (REST + RPC + realtime).
What it does:

Reads credentials from the environment. Example .env:

BACKEND_URL=https://yourproject.example.co
BACKEND_ANON_KEY=public-anon-key
BACKEND_ACCESS_TOKEN=optional-user-session-jwt
BACKEND_TIMEOUT=5
REALTIME_HEARTBEAT_SECONDS=30

Rule: No request logic here, just parameters.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class BackendSettings:
    """
    Where the backend lives and how to authenticate against it.
    """
    url: str
    anon_key: str

    # Signed-in user's session token. Falls back to the anon key when absent.
    access_token: Optional[str] = None

    # Seconds to wait for a REST/RPC response before giving up.
    timeout: float = 5.0

    # Seconds between realtime heartbeats; the server drops silent sockets.
    heartbeat_seconds: float = 30.0

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if not self.url:
            raise ValueError("Backend URL not set. Please set BACKEND_URL in the .env file.")

        if not self.anon_key:
            raise ValueError("Backend key not set. Please set BACKEND_ANON_KEY in the .env file.")

        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

        if self.heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be > 0")


def settings_from_env() -> BackendSettings:
    """
    Build settings from environment variables and fail fast if they are incomplete.
    """
    s = BackendSettings(
        url=os.getenv("BACKEND_URL", ""),
        anon_key=os.getenv("BACKEND_ANON_KEY", ""),
        access_token=os.getenv("BACKEND_ACCESS_TOKEN") or None,
        timeout=float(os.getenv("BACKEND_TIMEOUT", "5")),
        heartbeat_seconds=float(os.getenv("REALTIME_HEARTBEAT_SECONDS", "30")),
    )
    s.validate()
    return s
