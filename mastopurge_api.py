"""Minimal Mastodon REST transport with transparent 429 handling."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import requests

__version__ = "1.0.0"

USER_AGENT = f"MastoPurge/{__version__}"
DEFAULT_RATE_LIMIT_WAIT = 30.0
BODY_METHODS = {"POST", "PUT", "PATCH"}

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Network-level failure talking to the server."""


@dataclass
class ApiResponse:
    status_code: int
    body: bytes
    link: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"invalid JSON: {preview_body(self.body)}") from exc


def preview_body(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")[:260].replace("\n", " ")


def normalize_server_url(raw: str) -> str:
    url = raw.strip()
    if not url:
        raise ValueError("Empty server address")
    if not (url.startswith("http://") or url.startswith("https://")):
        url = "https://" + url
    return url.rstrip("/")


def parse_api_datetime(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def rate_limit_wait_seconds(headers: Mapping[str, str], now: datetime | None = None) -> float:
    reset = parse_api_datetime(headers.get("X-RateLimit-Reset"))
    if reset is None:
        return DEFAULT_RATE_LIMIT_WAIT
    now = now or datetime.now(timezone.utc)
    return max(1.0, (reset - now).total_seconds())


class ApiClient:
    """One connection pool, one request in flight at a time."""

    def __init__(
        self,
        server: str,
        access_token: str = "",
        *,
        timeout: float = 20.0,
        session: requests.Session | None = None,
        user_agent: str = USER_AGENT,
    ) -> None:
        self.server = normalize_server_url(server)
        self.access_token = access_token
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()
        self.user_agent = user_agent
        self.request_count = 0

    def build_headers(self) -> dict[str, str]:
        headers = {
            "accept": "application/json",
            "user-agent": self.user_agent,
        }
        if self.access_token:
            headers["authorization"] = f"Bearer {self.access_token}"
        return headers

    def send(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
    ) -> ApiResponse:
        method = method.upper()
        url = self.server + path
        query: Mapping[str, Any] | None = None
        form: Mapping[str, Any] | None = None
        if method in BODY_METHODS:
            form = params
        else:
            query = params

        while True:
            self.request_count += 1
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    headers=self.build_headers(),
                    params=query,
                    data=form,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                raise TransportError(f"{method} {path} failed: {exc}") from exc

            if resp.status_code != 429:
                return ApiResponse(resp.status_code, resp.content, resp.headers.get("Link"))

            wait_for = rate_limit_wait_seconds(resp.headers)
            logger.warning(
                "Server is throttling (429). Waiting %.0fs before retrying %s %s.",
                wait_for,
                method,
                path,
            )
            time.sleep(wait_for)
            logger.info("Retrying %s %s", method, path)
