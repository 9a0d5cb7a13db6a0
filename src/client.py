"""Backend client factories for registry-chat.

The access token and the signed-in identity are issued by the portal's
login flow; this client only reads them from the environment.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv

from adapters.http_api import RegistryApiClient
from adapters.socketio_transport import SocketIOTransport
from adapters.wire import parse_role
from core.models import Identity


def load_identity() -> Identity:
    """Read the signed-in identity from environment variables.

    We read REGISTRY_USER_ID/REGISTRY_USER_ROLE via python-dotenv to keep
    session details out of the repo.
    """

    load_dotenv()

    user_id = os.getenv("REGISTRY_USER_ID")
    role = os.getenv("REGISTRY_USER_ROLE")

    # Fail fast on a missing identity to avoid acting as nobody.
    if not user_id or not role:
        raise RuntimeError("Missing REGISTRY_USER_ID or REGISTRY_USER_ROLE in environment")

    return Identity(id=user_id, role=parse_role(role), name=os.getenv("REGISTRY_USER_NAME"))


def _require_api_url() -> str:
    load_dotenv()
    api_url = os.getenv("REGISTRY_API_URL")
    if not api_url:
        raise RuntimeError("Missing REGISTRY_API_URL in environment")
    return api_url


def build_api_client(identity: Identity, request_timeout: float = 30.0) -> RegistryApiClient:
    api_url = _require_api_url()
    logging.getLogger(__name__).info("Initializing registry API client")
    return RegistryApiClient(
        api_url,
        os.getenv("REGISTRY_ACCESS_TOKEN"),
        role=identity.role,
        request_timeout=request_timeout,
    )


def build_transport(identity: Identity, socket_url: Optional[str] = None) -> SocketIOTransport:
    url = socket_url or os.getenv("REGISTRY_SOCKET_URL") or _require_api_url()
    logging.getLogger(__name__).info("Initializing push transport")
    return SocketIOTransport(url, os.getenv("REGISTRY_ACCESS_TOKEN"), identity.id)
