"""Registry backend REST adapter.

Implements the core ChatApiPort over aiohttp. Administrators and other roles
talk to different route sets on the backend; the paths are collected in
``ChatRoutes`` so a deployment can override them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from adapters.wire import (
    channel_from_group,
    message_from_payload,
    messages_from_payload,
    selector_params,
)
from core.errors import ApiError, PermissionDenied
from core.models import Channel, ChannelSelector, Identity, Message, MessageBody, Role

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatRoutes:
    history: str = "/chat/messages"
    send: str = "/chat/messages"
    message: str = "/chat/messages/{message_id}"
    groups: str = "/chat/my-groups"
    refresh: str = "/auth/refresh"


ADMIN_ROUTES = ChatRoutes(history="/chat/chat/messages", send="/chat/admin/send")
MEMBER_ROUTES = ChatRoutes()


def routes_for(role: Role) -> ChatRoutes:
    return ADMIN_ROUTES if role is Role.ADMIN else MEMBER_ROUTES


class RegistryApiClient:
    """Thin aiohttp wrapper that satisfies the ChatApiPort contract."""

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        *,
        role: Role = Role.GUEST,
        routes: Optional[ChatRoutes] = None,
        request_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._routes = routes or routes_for(role)
        self._role = role
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RegistryApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            headers = {"Accept": "application/json"}
            if self._access_token:
                headers["Authorization"] = f"Bearer {self._access_token}"
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        form: Optional[Dict[str, str]] = None,
        retry_auth: bool = True,
        **kwargs,
    ) -> Any:
        url = f"{self._base_url}{path}"
        if form is not None:
            # FormData is single-use, so it is rebuilt for every attempt.
            data = aiohttp.FormData()
            for key, value in form.items():
                data.add_field(key, value)
            kwargs["data"] = data
        try:
            async with self._client().request(method, url, **kwargs) as response:
                expired = response.status == 401 and retry_auth
                if not expired:
                    return await self._read(method, path, response)
        except aiohttp.ClientError as exc:
            LOGGER.warning("Request %s %s failed: %s", method, path, exc)
            raise ApiError(f"{method} {path} failed: {exc}") from exc
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Request %s %s timed out", method, path)
            raise ApiError(f"{method} {path} timed out") from exc

        kwargs.pop("data", None)
        if await self._refresh_session():
            return await self._request(method, path, form=form, retry_auth=False, **kwargs)
        raise PermissionDenied(f"{method} {path} needs a fresh session")

    async def _read(self, method: str, path: str, response: aiohttp.ClientResponse) -> Any:
        if response.status in (401, 403):
            detail = await self._error_detail(response)
            raise PermissionDenied(detail or f"{method} {path} was refused")
        if response.status >= 400:
            detail = await self._error_detail(response)
            raise ApiError(f"{method} {path} failed: {detail or response.reason}", response.status)
        if response.status == 204 or response.content_length == 0:
            return None
        return await response.json(content_type=None)

    async def _refresh_session(self) -> bool:
        try:
            async with self._client().post(f"{self._base_url}{self._routes.refresh}", json={}) as response:
                ok = response.status < 400
        except aiohttp.ClientError as exc:
            LOGGER.warning("Session refresh failed: %s", exc)
            return False
        if not ok:
            LOGGER.info("Session refresh was rejected")
        return ok

    @staticmethod
    async def _error_detail(response: aiohttp.ClientResponse) -> str:
        try:
            payload = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return (await response.text()).strip()
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or "")
        return ""

    def _history_params(self, selector: ChannelSelector, limit: int) -> Dict[str, str]:
        params = selector_params(selector)
        if self._role is Role.ADMIN:
            # The admin route names its filters differently.
            if "receiver" in params:
                params = {"receiverId": params["receiver"]}
            elif "group" in params:
                params = {"groupId": params["group"]}
        params["limit"] = str(limit)
        return params

    async def fetch_history(self, selector: ChannelSelector, limit: int) -> List[Message]:
        payload = await self._request("GET", self._routes.history, params=self._history_params(selector, limit))
        messages = messages_from_payload(payload)
        messages.sort(key=lambda message: message.created_at)
        return messages

    async def post_message(self, selector: ChannelSelector, body: MessageBody) -> Message:
        form = dict(selector_params(selector))
        if self._role is Role.ADMIN:
            form["isBroadcast"] = "true" if selector.broadcast else "false"
        if body.text:
            form["text"] = body.text
        if body.attachment_url:
            form["imageUrl"] = body.attachment_url
        payload = await self._request("POST", self._routes.send, form=form)
        return message_from_payload(payload)

    async def patch_message(self, message_id: str, new_text: str) -> Message:
        path = self._routes.message.format(message_id=message_id)
        payload = await self._request("PATCH", path, json={"text": new_text})
        return message_from_payload(payload)

    async def delete_message(self, message_id: str) -> None:
        path = self._routes.message.format(message_id=message_id)
        await self._request("DELETE", path)

    async def list_channels(self, identity: Identity) -> List[Channel]:
        payload = await self._request("GET", self._routes.groups)
        if isinstance(payload, dict):
            payload = payload.get("groups", [])
        channels: List[Channel] = []
        for item in payload or []:
            channel = channel_from_group(item, identity.id)
            if channel is not None:
                channels.append(channel)
        return channels
