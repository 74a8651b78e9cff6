from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from auth.oauth2 import DEFAULT_AUTH_METHODS

from .constants import (
    DEFAULT_FORWARD_METHODS,
    DEFAULT_REDIRECT_URI,
    DEFAULT_TOKEN_STORE_PATH,
    LOGGER,
)

REQUIRED_ENV = (
    "OAUTH_CLIENT_ID",
    "OAUTH_CLIENT_SECRET",
    "OAUTH_TOKEN_URL",
    "BRIDGE_RESOURCE_URL",
)

_HTTP_URL = TypeAdapter(AnyHttpUrl)


@dataclass
class BridgeSettings:
    client_id: str
    client_secret: str
    token_url: str
    resource_url: str
    authorize_url: str
    redirect_uri: str
    scopes: list[str]
    seed_refresh_token: str | None
    auth_methods: list[str]
    token_store_path: Path
    timeout: float
    max_retries: int
    refresh_margin: float
    forward_methods: list[str]


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> list[str]:
    raw = os.getenv(key, "")
    if not raw.strip():
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def _validate_url(key: str, value: str) -> None:
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError as error:
        raise RuntimeError(f"{key} must be a valid http(s) URL, got {value!r}.") from error


def default_authorize_url(token_url: str) -> str:
    base, _, tail = token_url.rstrip("/").rpartition("/")
    if tail == "token":
        return f"{base}/authorize"
    return f"{token_url.rstrip('/')}/authorize"


def load_env(path: str | Path | None = None) -> None:
    env_path = Path(path) if path is not None else Path.cwd() / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=False)


def validate_env() -> None:
    missing = [key for key in REQUIRED_ENV if not os.getenv(key, "").strip()]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    _validate_url("OAUTH_TOKEN_URL", os.environ["OAUTH_TOKEN_URL"].strip())
    _validate_url("BRIDGE_RESOURCE_URL", os.environ["BRIDGE_RESOURCE_URL"].strip())

    unknown = [
        method
        for method in parse_csv_env("OAUTH_TOKEN_AUTH_METHODS")
        if method not in DEFAULT_AUTH_METHODS
    ]
    if unknown:
        raise RuntimeError(
            f"OAUTH_TOKEN_AUTH_METHODS has unsupported entries: {', '.join(unknown)} "
            f"(expected any of {', '.join(DEFAULT_AUTH_METHODS)})."
        )


def load_settings() -> BridgeSettings:
    validate_env()

    token_url = os.environ["OAUTH_TOKEN_URL"].strip()
    authorize_url = os.getenv("OAUTH_AUTHORIZE_URL", "").strip() or default_authorize_url(token_url)
    _validate_url("OAUTH_AUTHORIZE_URL", authorize_url)

    return BridgeSettings(
        client_id=os.environ["OAUTH_CLIENT_ID"].strip(),
        client_secret=os.environ["OAUTH_CLIENT_SECRET"],
        token_url=token_url,
        resource_url=os.environ["BRIDGE_RESOURCE_URL"].strip(),
        authorize_url=authorize_url,
        redirect_uri=os.getenv("OAUTH_REDIRECT_URI", "").strip() or DEFAULT_REDIRECT_URI,
        scopes=os.getenv("OAUTH_SCOPES", "").split(),
        seed_refresh_token=os.getenv("OAUTH_REFRESH_TOKEN", "").strip() or None,
        auth_methods=parse_csv_env("OAUTH_TOKEN_AUTH_METHODS") or list(DEFAULT_AUTH_METHODS),
        token_store_path=Path(
            os.getenv("BRIDGE_TOKEN_STORE_PATH", "").strip() or DEFAULT_TOKEN_STORE_PATH
        ).expanduser(),
        timeout=_get_env_float("BRIDGE_TIMEOUT", 30.0),
        max_retries=_get_env_int("BRIDGE_MAX_RETRIES", 2),
        refresh_margin=_get_env_float("BRIDGE_REFRESH_MARGIN", 60.0),
        forward_methods=parse_csv_env("BRIDGE_FORWARD_METHODS") or list(DEFAULT_FORWARD_METHODS),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("BRIDGE_DEBUG", "1"))
    # basicConfig writes to stderr; stdout carries the JSON-RPC stream.
    logging.basicConfig(
        level=logging.INFO if debug_enabled else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    LOGGER.setLevel(logging.INFO if debug_enabled else logging.WARNING)
    return debug_enabled
