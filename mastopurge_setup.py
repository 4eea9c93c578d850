"""Settings file, app registration and OAuth code exchange for mastopurge."""

from __future__ import annotations

import json
import logging
import os
import urllib.parse
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable

from mastopurge_api import ApiClient, normalize_server_url, preview_body
from mastopurge_pages import AccountRef, parse_account

DEFAULT_SETTINGS_FILE = ".mastopurgesettings"
APP_NAME = "MastoPurge"
REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"
SCOPES = "read write"

AGE_UNITS = {
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
    "week": timedelta(weeks=1),
    "weeks": timedelta(weeks=1),
    "month": timedelta(days=30),
    "months": timedelta(days=30),
    "year": timedelta(days=365),
    "years": timedelta(days=365),
}

logger = logging.getLogger(__name__)


class SettingsError(Exception):
    """Settings file exists but cannot be used."""


class SetupError(Exception):
    """Registering the app or authorizing the account failed."""


@dataclass
class Settings:
    server: str
    client_id: str = ""
    client_secret: str = ""
    access_token: str = ""

    @property
    def server_url(self) -> str:
        return normalize_server_url(self.server)


def parse_max_age(raw: str) -> timedelta:
    """Parse ``"<n> <unit>"``, e.g. ``"6 months"``. Months are 30 days, years 365."""
    parts = raw.strip().split()
    if len(parts) != 2:
        raise ValueError(f'Invalid maximum age "{raw}"')
    count, unit = parts
    if not count.isdigit():
        raise ValueError(f'Invalid maximum age "{raw}"')
    factor = AGE_UNITS.get(unit.lower())
    if factor is None:
        raise ValueError(f'Invalid maximum age "{raw}": unknown unit {unit!r}')
    return factor * int(count)


def load_settings(path: str) -> Settings | None:
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as fp:
            obj = json.load(fp)
    except (OSError, ValueError) as exc:
        raise SettingsError(
            f"Config file is malformed. Consider deleting '{path}' and starting mastopurge again. ({exc})"
        ) from exc
    if not isinstance(obj, dict) or not str(obj.get("server", "")).strip():
        raise SettingsError(f"Config file '{path}' has no server. Consider deleting it and starting again.")
    values = {k: str(v) for k, v in obj.items() if v is not None}
    return Settings(
        server=values["server"].strip(),
        client_id=values.get("client_id", ""),
        client_secret=values.get("client_secret", ""),
        access_token=values.get("access_token", ""),
    )


def save_settings(path: str, settings: Settings) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fp:
        json.dump(asdict(settings), fp, ensure_ascii=False, indent=2)
        fp.write("\n")


def post_form(client: ApiClient, path: str, form: dict[str, str], label: str) -> dict[str, Any]:
    resp = client.send("POST", path, form)
    if not resp.ok:
        raise SetupError(f"{label} failed HTTP {resp.status_code}: {preview_body(resp.body)}")
    try:
        payload = resp.json()
    except ValueError as exc:
        raise SetupError(f"{label} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise SetupError(f"{label} response is not an object")
    return payload


def register_app(client: ApiClient) -> tuple[str, str]:
    payload = post_form(
        client,
        "/api/v1/apps",
        {"client_name": APP_NAME, "redirect_uris": REDIRECT_URI, "scopes": SCOPES},
        "App registration",
    )
    client_id = str(payload.get("client_id", "")).strip()
    client_secret = str(payload.get("client_secret", "")).strip()
    if not client_id or not client_secret:
        raise SetupError(f"client_id/client_secret missing in response: {payload}")
    return client_id, client_secret


def build_authorize_url(server_url: str, client_id: str) -> str:
    params = {
        "scope": SCOPES,
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "client_id": client_id,
    }
    return server_url + "/oauth/authorize?" + urllib.parse.urlencode(params, quote_via=urllib.parse.quote)


def exchange_code_for_token(client: ApiClient, *, client_id: str, client_secret: str, code: str) -> str:
    payload = post_form(
        client,
        "/oauth/token",
        {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": REDIRECT_URI,
            "code": code,
        },
        "Token exchange",
    )
    token = str(payload.get("access_token", "")).strip()
    if not token:
        raise SetupError("access_token missing in token response")
    return token


def prompt(ask: Callable[[str], str], text: str) -> str:
    try:
        return ask(text).strip()
    except EOFError as exc:
        raise SetupError("No input available; run mastopurge interactively once to set it up") from exc


def onboard(
    path: str,
    client_factory: Callable[[str], ApiClient],
    ask: Callable[[str], str] = input,
) -> Settings:
    """Connect mastopurge to an account interactively and save the settings."""
    print("\nFirst we need to connect mastopurge to your Mastodon account.")
    print('Enter the domain of your Mastodon home instance (e.g. "metalhead.club").')
    server = prompt(ask, "[Mastodon home instance]: ")
    if not server:
        raise SetupError("No server given")

    settings = Settings(server=server)
    client = client_factory(settings.server_url)
    logger.info("Registering %s app on %s", APP_NAME, settings.server)
    settings.client_id, settings.client_secret = register_app(client)

    print("\nPlease visit this URL in your web browser:")
    print(build_authorize_url(settings.server_url, settings.client_id))
    code = prompt(ask, "\n... and enter the code here:\n[Auth code]: ")
    if not code:
        raise SetupError("Authorization code missing")

    settings.access_token = exchange_code_for_token(
        client,
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        code=code,
    )
    try:
        save_settings(path, settings)
    except OSError as exc:
        raise SetupError(f"Failed saving settings to '{path}': {exc}") from exc
    logger.info("Saved settings to %s", path)
    return settings


def verify_credentials(client: ApiClient) -> AccountRef:
    resp = client.send("GET", "/api/v1/accounts/verify_credentials")
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    account = parse_account(payload)
    if not resp.ok or account is None:
        raise SetupError(f"API access was not granted (HTTP {resp.status_code}): {preview_body(resp.body)}")
    return account
