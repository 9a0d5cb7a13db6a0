from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from adapters.http_api import ADMIN_ROUTES, RegistryApiClient
from core.errors import ApiError, PermissionDenied
from core.models import ChannelKind, ChannelSelector, MessageBody, Role

from fakes import JUDGE


def _doc(message_id: str, created_at: str, **extra) -> dict:
    doc = {"_id": message_id, "sender": "A", "receiver": "J", "text": "hi", "createdAt": created_at}
    doc.update(extra)
    return doc


class Backend:
    """In-process registry backend that records what the client sent."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict]] = []
        self.auth_headers: list[str] = []
        self.expire_next = False
        self.refresh_ok = True

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/chat/messages", self.history)
        app.router.add_get("/chat/chat/messages", self.history)
        app.router.add_post("/chat/messages", self.send)
        app.router.add_post("/chat/admin/send", self.send)
        app.router.add_patch("/chat/messages/{message_id}", self.patch)
        app.router.add_delete("/chat/messages/{message_id}", self.delete)
        app.router.add_get("/chat/my-groups", self.groups)
        app.router.add_post("/auth/refresh", self.refresh)
        return app

    def _record(self, request: web.Request, fields: dict) -> None:
        self.requests.append((request.method, request.path, fields))
        self.auth_headers.append(request.headers.get("Authorization", ""))

    async def history(self, request: web.Request) -> web.Response:
        self._record(request, dict(request.query))
        if self.expire_next:
            self.expire_next = False
            return web.json_response({"message": "jwt expired"}, status=401)
        return web.json_response(
            [
                _doc("m2", "2024-05-01T09:02:00Z"),
                _doc("m1", "2024-05-01T09:01:00Z"),
            ]
        )

    async def send(self, request: web.Request) -> web.Response:
        form = await request.post()
        self._record(request, dict(form))
        if self.expire_next:
            self.expire_next = False
            return web.json_response({"message": "jwt expired"}, status=401)
        return web.json_response(
            _doc("m9", "2024-05-01T09:03:00Z", text=form.get("text"), isBroadcast=form.get("isBroadcast") == "true")
        )

    async def patch(self, request: web.Request) -> web.Response:
        body = await request.json()
        self._record(request, body)
        if request.match_info["message_id"] == "locked":
            return web.json_response({"message": "Not your message"}, status=403)
        return web.json_response(_doc(request.match_info["message_id"], "2024-05-01T09:01:00Z", isEdited=True, **body))

    async def delete(self, request: web.Request) -> web.Response:
        self._record(request, {})
        if request.match_info["message_id"] == "missing":
            return web.json_response({"message": "Message not found"}, status=404)
        return web.Response(status=204)

    async def groups(self, request: web.Request) -> web.Response:
        self._record(request, {})
        return web.json_response(
            [
                {"_id": "g1", "name": "Chambers", "type": "group", "members": ["A", "J"]},
                {"_id": "p1", "name": "Registrar", "type": "private", "members": ["A", "J"]},
                {"_id": "b1", "name": "Announcements", "type": "broadcast"},
                {"_id": "gone", "name": "Old", "isDeleted": True},
            ]
        )

    async def refresh(self, request: web.Request) -> web.Response:
        self._record(request, {})
        if not self.refresh_ok:
            return web.json_response({"message": "refresh expired"}, status=401)
        return web.json_response({"ok": True})


def _run(backend: Backend, scenario, *, role: Role = Role.JUDGE):
    async def runner():
        server = test_utils.TestServer(backend.app())
        await server.start_server()
        try:
            async with RegistryApiClient(f"http://{server.host}:{server.port}", "tok", role=role) as api:
                return await scenario(api)
        finally:
            await server.close()

    return asyncio.run(runner())


def test_fetch_history_sorts_and_sends_bearer_token() -> None:
    backend = Backend()

    messages = _run(backend, lambda api: api.fetch_history(ChannelSelector(direct_with="A"), 50))

    assert [message.id for message in messages] == ["m1", "m2"]
    assert backend.requests[0] == ("GET", "/chat/messages", {"receiver": "A", "limit": "50"})
    assert backend.auth_headers[0] == "Bearer tok"


def test_admin_history_uses_admin_route_and_names() -> None:
    backend = Backend()

    _run(backend, lambda api: api.fetch_history(ChannelSelector(group_id="g1"), 10), role=Role.ADMIN)

    assert backend.requests[0] == ("GET", ADMIN_ROUTES.history, {"groupId": "g1", "limit": "10"})


def test_post_message_sends_form_fields() -> None:
    backend = Backend()

    message = _run(
        backend,
        lambda api: api.post_message(ChannelSelector(broadcast=True), MessageBody(text="Court closed")),
        role=Role.ADMIN,
    )

    method, path, fields = backend.requests[0]
    assert (method, path) == ("POST", "/chat/admin/send")
    assert fields == {"isBroadcast": "true", "text": "Court closed"}
    assert message.id == "m9"
    assert message.is_broadcast


def test_expired_session_is_refreshed_once() -> None:
    backend = Backend()
    backend.expire_next = True

    message = _run(backend, lambda api: api.post_message(ChannelSelector(direct_with="A"), MessageBody(text="x")))

    assert [path for _, path, _ in backend.requests] == ["/chat/messages", "/auth/refresh", "/chat/messages"]
    assert backend.requests[-1][2] == {"receiver": "A", "text": "x"}
    assert message.id == "m9"


def test_rejected_refresh_raises_permission_denied() -> None:
    backend = Backend()
    backend.expire_next = True
    backend.refresh_ok = False

    with pytest.raises(PermissionDenied):
        _run(backend, lambda api: api.fetch_history(ChannelSelector(broadcast=True), 10))


def test_forbidden_edit_maps_to_permission_denied() -> None:
    backend = Backend()

    with pytest.raises(PermissionDenied, match="Not your message"):
        _run(backend, lambda api: api.patch_message("locked", "new"))


def test_patch_and_delete() -> None:
    backend = Backend()

    async def scenario(api):
        edited = await api.patch_message("m1", "amended")
        deleted = await api.delete_message("m1")
        return edited, deleted

    edited, deleted = _run(backend, scenario)

    assert edited.body.text == "amended"
    assert edited.is_edited
    assert deleted is None
    assert backend.requests[0] == ("PATCH", "/chat/messages/m1", {"text": "amended"})


def test_server_error_carries_status() -> None:
    backend = Backend()

    with pytest.raises(ApiError) as excinfo:
        _run(backend, lambda api: api.delete_message("missing"))

    assert excinfo.value.status == 404
    assert "Message not found" in str(excinfo.value)


def test_list_channels_normalizes_groups() -> None:
    backend = Backend()

    channels = _run(backend, lambda api: api.list_channels(JUDGE))

    assert [(channel.kind, channel.id) for channel in channels] == [
        (ChannelKind.GROUP, "group:g1"),
        (ChannelKind.DIRECT, "direct:A|J"),
        (ChannelKind.BROADCAST, "broadcast"),
    ]


def test_unreachable_backend_raises_api_error() -> None:
    async def scenario():
        async with RegistryApiClient("http://127.0.0.1:9", role=Role.GUEST, request_timeout=2) as api:
            await api.list_channels(JUDGE)

    with pytest.raises(ApiError):
        asyncio.run(scenario())
