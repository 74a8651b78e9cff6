from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


@dataclass
class Credential:
    access_token: str
    refresh_token: str
    expires_at: float
    scope: frozenset[str] = field(default_factory=frozenset)
    token_type: str = "Bearer"

    def is_expired(self, *, margin: float = 0.0, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at - margin

    @classmethod
    def from_payload(
        cls,
        payload: dict,
        *,
        previous_refresh_token: str | None = None,
        now: float | None = None,
    ) -> "Credential":
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token") or previous_refresh_token
        expires_in = payload.get("expires_in")
        scope = payload.get("scope") or ""
        token_type = payload.get("token_type") or "Bearer"

        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response missing access_token.")
        if not isinstance(refresh_token, str) or not refresh_token:
            raise ValueError("Token response missing refresh_token.")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise ValueError("Token response missing expires_in.")
        if not isinstance(scope, str):
            raise ValueError("Token response scope must be a string.")
        if not isinstance(token_type, str):
            raise ValueError("Token response token_type must be a string.")

        current = time.time() if now is None else now
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=current + expires_in,
            scope=frozenset(scope.split()),
            token_type=token_type,
        )

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": sorted(self.scope),
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Credential":
        try:
            return cls(
                access_token=str(payload["access_token"]),
                refresh_token=str(payload["refresh_token"]),
                expires_at=float(payload["expires_at"]),
                scope=frozenset(payload.get("scope") or ()),
                token_type=str(payload.get("token_type") or "Bearer"),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise RuntimeError(f"Stored credential is invalid: {error}") from error


@dataclass(frozen=True)
class AuthorizationGrant:
    code: str
    redirect_uri: str


class AuthErrorKind(str, Enum):
    INVALID_GRANT = "invalid_grant"
    INVALID_CLIENT = "invalid_client"
    NETWORK = "network"
    PROVIDER_ERROR = "provider_error"


class AuthError(RuntimeError):
    """Typed failure from the OAuth2 provider or the token manager.

    ``sent`` is False only when the request provably never reached the
    provider, which is the one case where a refresh token may be submitted
    again.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        description: str,
        *,
        status: int | None = None,
        body: object = None,
        sent: bool = True,
        retryable: bool = False,
    ) -> None:
        super().__init__(description)
        self.kind = kind
        self.description = description
        self.status = status
        self.body = body
        self.sent = sent
        self.retryable = retryable

    def to_data(self) -> dict:
        data: dict = {"kind": self.kind.value, "description": self.description}
        if self.status is not None:
            data["status"] = self.status
        if self.body is not None:
            data["body"] = self.body
        return data
