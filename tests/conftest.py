from __future__ import annotations

import json
from typing import Any, Callable, Union

import httpx
from pytest import fixture

from m365_admin_toolkit.graph.client import ArmClient, GraphClient, SharePointClient
from m365_admin_toolkit.safety.guardian import ChangeGuardian

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], dict, list, str]


class FakeTenant:
    """
    Canned Microsoft API. Routes match on HTTP method and a substring of the
    URL path; the longest matching path wins, then the latest added. Queued
    responses are served in order and the last one repeats.
    """

    def __init__(self) -> None:
        self._routes: list[tuple[str, str, list[Responder]]] = []
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Responder) -> "FakeTenant":
        self._routes.append((method.upper(), path, list(responses) or [{}]))
        return self

    def calls(self, method: str, path: str = "") -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and path in r.url.path]

    def body(self, request: httpx.Request) -> Any:
        return json.loads(request.content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        matches = [
            route for route in self._routes
            if route[0] == request.method and route[1] in request.url.path
        ]
        if not matches:
            return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "no route"}})
        _, _, queue = max(reversed(matches), key=lambda route: len(route[1]))
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(responder, httpx.Response):
            # a response is consumed once; repeats get a copy
            return httpx.Response(responder.status_code, headers=responder.headers, content=responder.content)
        if callable(responder):
            return responder(request)
        return httpx.Response(200, json=responder)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def graph_error(status: int, code: str = "", message: str = "", headers: dict = None) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}}, headers=headers)


@fixture
def tenant() -> FakeTenant:
    return FakeTenant()


@fixture
def guardian() -> ChangeGuardian:
    return ChangeGuardian(apply=True)


@fixture
def dry_guardian() -> ChangeGuardian:
    return ChangeGuardian()


@fixture(autouse=True)
def sleeps(monkeypatch) -> list[float]:
    """Record client backoff sleeps instead of waiting."""
    recorded: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        recorded.append(seconds)

    monkeypatch.setattr("m365_admin_toolkit.graph.client.asyncio.sleep", fake_sleep)
    return recorded


@fixture
def make_graph(tenant: FakeTenant) -> Callable[[ChangeGuardian], GraphClient]:
    def make(guard: ChangeGuardian) -> GraphClient:
        return GraphClient("token", guard, transport=tenant.transport)
    return make


@fixture
def make_admin(tenant: FakeTenant) -> Callable[[ChangeGuardian], SharePointClient]:
    def make(guard: ChangeGuardian) -> SharePointClient:
        return SharePointClient("https://contoso-admin.sharepoint.com", "token", guard, transport=tenant.transport)
    return make


@fixture
def make_arm(tenant: FakeTenant) -> Callable[[ChangeGuardian], ArmClient]:
    def make(guard: ChangeGuardian) -> ArmClient:
        return ArmClient("token", guard, api_version="2023-11-01", transport=tenant.transport)
    return make
