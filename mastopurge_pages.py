"""Status pages and the max_id cursor walk over them.

Mastodon timelines are paged newest-first. Each request is bounded above by a
``max_id`` cursor which must only ever move down, otherwise a walk over a
timeline that is being deleted underneath us would never finish.
"""

from __future__ import annotations

import json
import logging
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

import requests

from mastopurge_api import ApiClient, parse_api_datetime, preview_body

PAGE_LIMIT = 40

logger = logging.getLogger(__name__)


class PageError(Exception):
    """The server answered with something that is not a list of statuses."""

    def __init__(self, message: str, body: bytes = b"") -> None:
        super().__init__(message)
        self.body = body

    @property
    def raw(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class AccountRef:
    id: str
    username: str | None = None
    acct: str | None = None


@dataclass(frozen=True, order=True)
class Item:
    id: int
    created_at: datetime = field(compare=False)
    account: AccountRef | None = field(default=None, compare=False)

    @property
    def author(self) -> str:
        if self.account is None:
            return "-"
        return self.account.acct or self.account.username or self.account.id


def parse_account(raw: Any) -> AccountRef | None:
    if not isinstance(raw, dict):
        return None
    account_id = str(raw.get("id", "")).strip()
    if not account_id:
        return None
    username = raw.get("username") if isinstance(raw.get("username"), str) else None
    acct = raw.get("acct") if isinstance(raw.get("acct"), str) else None
    return AccountRef(id=account_id, username=username, acct=acct)


def parse_item(raw: Any) -> Item:
    if not isinstance(raw, dict):
        raise ValueError(f"status is not an object: {raw!r}")
    try:
        item_id = int(str(raw.get("id", "")).strip())
    except ValueError as exc:
        raise ValueError(f"status id is not numeric: {raw.get('id')!r}") from exc
    if item_id < 0:
        raise ValueError(f"status id is negative: {item_id}")
    created_at = parse_api_datetime(raw.get("created_at"))
    if created_at is None:
        raise ValueError(f"status {item_id} has no valid created_at: {raw.get('created_at')!r}")
    return Item(id=item_id, created_at=created_at, account=parse_account(raw.get("account")))


def parse_items(body: bytes) -> list[Item]:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise PageError(f"response is not JSON: {preview_body(body)}", body) from exc
    if not isinstance(payload, list):
        # Error payloads come back as {"error": "..."}.
        raise PageError(f"expected a list of statuses: {preview_body(body)}", body)
    try:
        return [parse_item(raw) for raw in payload]
    except ValueError as exc:
        raise PageError(str(exc), body) from exc


class CursorStrategy:
    """How the next ``max_id`` is derived from a fetched page."""

    def next_cursor(self, items: list[Item], link: str | None) -> int | None:
        raise NotImplementedError

    def max_id_param(self, cursor: int) -> int:
        return cursor


class IdCursor(CursorStrategy):
    """Next cursor is the lowest id on the page minus one, an inclusive bound.

    Mastodon's ``max_id`` is exclusive, so the request sends ``cursor + 1``.
    """

    def next_cursor(self, items: list[Item], link: str | None) -> int | None:
        if not items:
            return None
        lowest = min(item.id for item in items)
        if lowest <= 0:
            return None
        return lowest - 1

    def max_id_param(self, cursor: int) -> int:
        return cursor + 1


class LinkCursor(CursorStrategy):
    def next_cursor(self, items: list[Item], link: str | None) -> int | None:
        return next_max_id_from_link(link)


def next_max_id_from_link(link: str | None) -> int | None:
    """Return the ``max_id`` of the ``rel="next"`` URL in a Link header."""
    if not link:
        return None
    for entry in requests.utils.parse_header_links(link):
        rels = str(entry.get("rel", "")).split()
        if "next" not in rels:
            continue
        query = urllib.parse.parse_qs(urllib.parse.urlparse(entry.get("url", "")).query)
        values = query.get("max_id") or []
        if not values:
            return None
        try:
            return int(values[0])
        except ValueError:
            return None
    return None


@dataclass
class Page:
    number: int
    cursor: int | None
    items: list[Item]
    next_cursor: int | None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class CursorWalker:
    """Lazily fetch pages of ``path`` until the cursor stops moving down.

    Single use: the cursor only ever decreases, so a finished walk cannot be
    replayed. Pages are yielded in server order and items are not deduplicated
    across pages.
    """

    def __init__(
        self,
        client: ApiClient,
        path: str,
        strategy: CursorStrategy,
        *,
        params: dict[str, Any] | None = None,
        limit: int = PAGE_LIMIT,
    ) -> None:
        self.client = client
        self.path = path
        self.strategy = strategy
        self.params = dict(params or {})
        self.limit = limit
        self._started = False

    def fetch(self, cursor: int | None) -> tuple[list[Item], str | None]:
        params: dict[str, Any] = dict(self.params)
        params["limit"] = self.limit
        if cursor is not None:
            params["max_id"] = self.strategy.max_id_param(cursor)
        resp = self.client.send("GET", self.path, params)
        return parse_items(resp.body), resp.link

    def pages(self) -> Iterator[Page]:
        if self._started:
            raise RuntimeError("cursor walk already consumed")
        self._started = True

        cursor: int | None = None
        number = 0
        while True:
            number += 1
            logger.debug("Fetching %s page %d until max_id %s", self.path, number, cursor)
            items, link = self.fetch(cursor)
            if not items:
                logger.debug("Empty page %d for %s. Done.", number, self.path)
                return

            next_cursor = self.strategy.next_cursor(items, link)
            if next_cursor is not None and cursor is not None and next_cursor >= cursor:
                logger.warning(
                    "Cursor for %s did not move down (%s -> %s). Stopping to avoid a loop.",
                    self.path,
                    cursor,
                    next_cursor,
                )
                next_cursor = None

            yield Page(number=number, cursor=cursor, items=items, next_cursor=next_cursor)
            if next_cursor is None:
                return
            cursor = next_cursor

    def __iter__(self) -> Iterator[Item]:
        for page in self.pages():
            yield from page.items
