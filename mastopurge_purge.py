"""Delete statuses and unfavourite posts older than a cutoff."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from mastopurge_api import ApiClient, TransportError, preview_body
from mastopurge_pages import CursorWalker, IdCursor, Item, LinkCursor, parse_items

DEFAULT_PAGE_DELAY = 1.0

logger = logging.getLogger(__name__)


class Decision(enum.Enum):
    DELETE = "delete"
    KEEP_RECENT = "keep-recent"
    KEEP_PROTECTED = "keep-protected"


@dataclass(frozen=True)
class PurgeOptions:
    cutoff: datetime
    dry_run: bool = False
    page_delay: float = DEFAULT_PAGE_DELAY


@dataclass
class ActionResult:
    success: bool
    message: str
    status_code: int | None = None


@dataclass
class RunState:
    pages: int = 0
    requests: int = 0
    considered: int = 0
    deleted: int = 0
    would_delete: int = 0
    kept: int = 0
    protected: int = 0
    failed: int = 0


def cutoff_for(max_age: timedelta, now: datetime | None = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - max_age


def format_dt(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def account_statuses_path(account_id: str) -> str:
    return f"/api/v1/accounts/{account_id}/statuses"


def decide(item: Item, cutoff: datetime, protected: frozenset[int]) -> Decision:
    if item.created_at >= cutoff:
        return Decision.KEEP_RECENT
    if item.id in protected:
        return Decision.KEEP_PROTECTED
    return Decision.DELETE


def load_protected(client: ApiClient, account_id: str) -> frozenset[int]:
    """Fetch the ids of pinned statuses. Pinned statuses come back in one page."""
    resp = client.send("GET", account_statuses_path(account_id), {"pinned": "true"})
    return frozenset(item.id for item in parse_items(resp.body))


def delete_status(client: ApiClient, item_id: int) -> ActionResult:
    try:
        resp = client.send("DELETE", f"/api/v1/statuses/{item_id}")
    except TransportError as exc:
        return ActionResult(False, f"REQUEST_ERROR: {exc}")

    if not resp.ok:
        return ActionResult(False, f"HTTP {resp.status_code}: {preview_body(resp.body)}", resp.status_code)

    try:
        payload = resp.json()
    except ValueError:
        return ActionResult(False, f"INVALID_JSON: {preview_body(resp.body)}", resp.status_code)

    # Depending on server version the deleted status is echoed back or the
    # body is an empty object.
    if payload == {}:
        return ActionResult(True, "Deleted", resp.status_code)
    if isinstance(payload, dict) and str(payload.get("id", "")).strip() == str(item_id):
        return ActionResult(True, "Deleted", resp.status_code)
    return ActionResult(False, f"UNCONFIRMED: {preview_body(resp.body)}", resp.status_code)


def unfavourite(client: ApiClient, item_id: int) -> ActionResult:
    try:
        resp = client.send("POST", f"/api/v1/statuses/{item_id}/unfavourite")
    except TransportError as exc:
        return ActionResult(False, f"REQUEST_ERROR: {exc}")
    if not resp.ok:
        return ActionResult(False, f"HTTP {resp.status_code}: {preview_body(resp.body)}", resp.status_code)
    return ActionResult(True, "Unfavourited", resp.status_code)


class Purger:
    """Runs one purge over one account.

    Fatal problems (``TransportError`` while listing, ``PageError``) propagate
    to the caller. A failed delete or unfavourite is logged and counted.
    """

    def __init__(self, client: ApiClient, account_id: str, options: PurgeOptions) -> None:
        self.client = client
        self.account_id = account_id
        self.options = options

    def _finish(self, state: RunState, requests_before: int) -> RunState:
        state.requests = self.client.request_count - requests_before
        return state

    def purge_statuses(self) -> RunState:
        state = RunState()
        requests_before = self.client.request_count
        cutoff = self.options.cutoff

        logger.info("========== Fetching pinned statuses ==========")
        protected = load_protected(self.client, self.account_id)
        logger.info("Found %d pinned statuses, which will not be deleted.", len(protected))

        walker = CursorWalker(self.client, account_statuses_path(self.account_id), IdCursor())
        seen: set[int] = set()

        for page in walker.pages():
            state.pages += 1
            logger.info(
                "========== Page %d: %d statuses until %s ==========",
                page.number,
                len(page.items),
                page.cursor if page.cursor is not None else "newest",
            )
            calls = 0
            for item in page.items:
                if item.id in seen:
                    continue
                seen.add(item.id)
                state.considered += 1

                decision = decide(item, cutoff, protected)
                if decision is Decision.KEEP_RECENT:
                    state.kept += 1
                    continue
                if decision is Decision.KEEP_PROTECTED:
                    state.protected += 1
                    logger.info("Status %d is pinned; not deleting.", item.id)
                    continue

                created = format_dt(item.created_at)
                if self.options.dry_run:
                    state.would_delete += 1
                    logger.info("[dry-run] Would delete status %d | %s", item.id, created)
                    continue

                calls += 1
                result = delete_status(self.client, item.id)
                if result.success:
                    state.deleted += 1
                    logger.info("Deleted status %d | %s", item.id, created)
                else:
                    state.failed += 1
                    logger.error("Could not delete status %d: %s", item.id, result.message)

            if calls == 0:
                logger.info("No posts deleted on this page. Trying next page ...")
            else:
                logger.info("%d statuses deleted so far.", state.deleted)
                # Give the server time to re-assemble its pages.
                if page.has_more and self.options.page_delay > 0:
                    time.sleep(self.options.page_delay)

        if self.options.dry_run:
            logger.info("[dry-run] %d statuses would have been deleted.", state.would_delete)
        return self._finish(state, requests_before)

    def collect_favourites(self, state: RunState) -> list[Item]:
        walker = CursorWalker(self.client, "/api/v1/favourites", LinkCursor())
        candidates: list[Item] = []
        seen: set[int] = set()
        for page in walker.pages():
            state.pages += 1
            logger.info("Got chunk of %d favourites (page %d).", len(page.items), page.number)
            for item in page.items:
                if item.id in seen:
                    continue
                seen.add(item.id)
                state.considered += 1
                if decide(item, self.options.cutoff, frozenset()) is not Decision.DELETE:
                    state.kept += 1
                    continue
                candidates.append(item)
        return candidates

    def purge_favourites(self) -> RunState:
        state = RunState()
        requests_before = self.client.request_count

        logger.info("========== Fetching favourites ==========")
        candidates = self.collect_favourites(state)
        logger.info("Found %d favourites older than %s.", len(candidates), format_dt(self.options.cutoff))

        for fav in candidates:
            label = f"{fav.id} by {fav.author} at {format_dt(fav.created_at)}"
            if self.options.dry_run:
                state.would_delete += 1
                logger.info("[dry-run] Would unfavourite %s", label)
                continue
            result = unfavourite(self.client, fav.id)
            if result.success:
                state.deleted += 1
                logger.info("Unfavourited %s", label)
            else:
                state.failed += 1
                logger.error("Could not unfavourite %d: %s", fav.id, result.message)

        return self._finish(state, requests_before)
