from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from mastopurge_api import ApiClient

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
ACCOUNT = {"id": "1", "username": "alice", "acct": "alice"}
SERVER = "https://social.example"


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def days_ago(days: float) -> str:
    return iso(NOW - timedelta(days=days))


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, *, body: bytes | None = None, headers=None):
        self.status_code = status_code
        if body is None:
            body = json.dumps(payload if payload is not None else {}).encode("utf-8")
        self.content = body
        self.headers = CaseInsensitiveDict(headers or {})

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")


class FakeMastodon:
    """In-memory stand-in for the handful of endpoints mastopurge talks to.

    ``max_id`` is exclusive, as on a real server.
    """

    def __init__(self) -> None:
        self.statuses: dict[int, dict[str, Any]] = {}
        self.pinned: set[int] = set()
        self.favourites: dict[int, dict[str, Any]] = {}
        self.delete_reply = "echo"
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.queued: dict[tuple[str, str], list[Any]] = {}

    def add_status(self, status_id: int, created_at: str, *, pinned: bool = False) -> None:
        self.statuses[status_id] = {"id": str(status_id), "created_at": created_at, "account": dict(ACCOUNT)}
        if pinned:
            self.pinned.add(status_id)

    def add_favourite(self, status_id: int, created_at: str, author: str = "bob") -> None:
        self.favourites[status_id] = {
            "id": str(status_id),
            "created_at": created_at,
            "account": {"id": "7", "username": author, "acct": f"{author}@other.example"},
        }

    def queue(self, method: str, path: str, *responses: Any) -> None:
        self.queued.setdefault((method, path), []).extend(responses)

    def calls_for(self, method: str, path_prefix: str = "") -> list[tuple[str, str, dict[str, Any]]]:
        return [c for c in self.calls if c[0] == method and c[1].startswith(path_prefix)]

    def request(self, method, url, headers=None, params=None, data=None, timeout=None):
        assert url.startswith(SERVER)
        path = url[len(SERVER):]
        args = dict(params or data or {})
        self.calls.append((method, path, args))

        queued = self.queued.get((method, path))
        if queued:
            nxt = queued.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return self.route(method, path, args)

    def route(self, method: str, path: str, args: dict[str, Any]) -> FakeResponse:
        if method == "GET" and path == "/api/v1/accounts/verify_credentials":
            return FakeResponse(200, ACCOUNT)

        if method == "GET" and path == f"/api/v1/accounts/{ACCOUNT['id']}/statuses":
            if args.get("pinned") == "true":
                return FakeResponse(200, [self.statuses[i] for i in sorted(self.pinned, reverse=True)])
            return FakeResponse(200, self.page(self.statuses, args))

        m = re.fullmatch(r"/api/v1/statuses/(\d+)", path)
        if method == "DELETE" and m:
            status_id = int(m.group(1))
            status = self.statuses.pop(status_id, None)
            self.pinned.discard(status_id)
            if status is None:
                return FakeResponse(404, {"error": "Record not found"})
            return FakeResponse(200, status if self.delete_reply == "echo" else {})

        if method == "GET" and path == "/api/v1/favourites":
            page = self.page(self.favourites, args)
            headers = {}
            if page:
                lowest = min(int(s["id"]) for s in page)
                headers["Link"] = (
                    f'<{SERVER}/api/v1/favourites?limit={args.get("limit", 40)}&max_id={lowest}>; rel="next", '
                    f'<{SERVER}/api/v1/favourites?limit={args.get("limit", 40)}&min_id={page[0]["id"]}>; rel="prev"'
                )
            return FakeResponse(200, page, headers=headers)

        m = re.fullmatch(r"/api/v1/statuses/(\d+)/unfavourite", path)
        if method == "POST" and m:
            status = self.favourites.pop(int(m.group(1)), None)
            return FakeResponse(200, status or {})

        return FakeResponse(404, {"error": "Record not found"})

    @staticmethod
    def page(store: dict[int, dict[str, Any]], args: dict[str, Any]) -> list[dict[str, Any]]:
        ids = sorted(store, reverse=True)
        if "max_id" in args:
            ids = [i for i in ids if i < int(args["max_id"])]
        return [store[i] for i in ids[: int(args.get("limit", 40))]]


@pytest.fixture
def server() -> FakeMastodon:
    return FakeMastodon()


@pytest.fixture
def client(server: FakeMastodon) -> ApiClient:
    return ApiClient(SERVER, "secret-token", session=server)


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    slept: list[float] = []
    monkeypatch.setattr("time.sleep", slept.append)
    return slept


@pytest.fixture
def connection_error() -> requests.ConnectionError:
    return requests.ConnectionError("connection reset by peer")
