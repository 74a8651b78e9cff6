from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Sequence

from auth.models import AuthError, AuthErrorKind, AuthorizationGrant, Credential
from auth.oauth2 import TokenEndpoint, build_authorization_url
from auth.token_store import CredentialStore

LOGGER = logging.getLogger("bridge.auth")

DEFAULT_SAFETY_MARGIN = 60.0

REAUTHORIZE_HINT = "Re-run the authorization-code flow (oauth/exchangeCode) to continue."


class OAuthTokenManager:
    """Sole owner of the current credential and of the refresh slot.

    At most one refresh runs at a time. Callers arriving while it is live
    await the same task, so a rotated single-use refresh token is submitted
    once. Every refresh token that may have reached the provider is
    remembered and never submitted again.
    """

    def __init__(
        self,
        endpoint: TokenEndpoint,
        store: CredentialStore,
        *,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        max_network_retries: int = 2,
        authorize_url: str | None = None,
        redirect_uri: str | None = None,
        scopes: Sequence[str] = (),
        sleep=asyncio.sleep,
        clock=time.time,
    ) -> None:
        self._endpoint = endpoint
        self._store = store
        self._safety_margin = safety_margin
        self._max_network_retries = max(0, max_network_retries)
        self._authorize_url = authorize_url
        self._redirect_uri = redirect_uri
        self._scopes = list(scopes)
        self._sleep = sleep
        self._clock = clock

        self._credential: Credential | None = None
        self._refresh_task: asyncio.Task[Credential] | None = None
        self._submitted_refresh_tokens: set[str] = set()
        self.reauthorization_required = False
        self.last_persist_error: str | None = None
        self.refresh_count = 0

    # -- startup -----------------------------------------------------------------

    async def load(self, *, seed_refresh_token: str | None = None) -> Credential | None:
        self._credential = await self._store.load()
        if self._credential is None and seed_refresh_token:
            LOGGER.info("No stored credential; seeding from configured refresh token")
            self._credential = Credential(
                access_token="",
                refresh_token=seed_refresh_token,
                expires_at=0.0,
            )
        if self._credential is None:
            LOGGER.warning("No OAuth credential available. %s", REAUTHORIZE_HINT)
        return self._credential

    # -- grants ------------------------------------------------------------------

    async def exchange_authorization_code(self, grant: AuthorizationGrant) -> Credential:
        credential = await self._endpoint.exchange_code(grant.code, grant.redirect_uri)
        self._credential = credential
        self.reauthorization_required = False
        LOGGER.info("Authorization code exchanged; credential expires at %s", credential.expires_at)
        await self._persist(credential)
        return credential

    async def get_valid_credential(self) -> Credential:
        if self.reauthorization_required:
            raise AuthError(
                AuthErrorKind.INVALID_GRANT,
                f"Stored refresh token can no longer be used. {REAUTHORIZE_HINT}",
            )
        credential = self._credential
        if credential is None:
            raise AuthError(
                AuthErrorKind.INVALID_GRANT,
                f"No OAuth credential is available. {REAUTHORIZE_HINT}",
            )
        if credential.access_token and not credential.is_expired(
            margin=self._safety_margin, now=self._clock()
        ):
            return credential
        return await self.refresh()

    async def refresh(self, stale: Credential | None = None) -> Credential:
        current = self._credential
        if stale is not None and current is not None and current.access_token != stale.access_token:
            return current

        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run_refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    # -- refresh operation -------------------------------------------------------

    async def _run_refresh(self) -> Credential:
        try:
            return await self._refresh_with_backoff()
        finally:
            self._refresh_task = None

    async def _refresh_with_backoff(self) -> Credential:
        attempts = 0
        while True:
            try:
                return await self._refresh_once()
            except AuthError as error:
                if not error.retryable or attempts >= self._max_network_retries:
                    raise
                backoff_seconds = 2**attempts
                LOGGER.warning(
                    "Token refresh could not reach provider; retrying after %ss", backoff_seconds
                )
                await self._sleep(backoff_seconds)
                attempts += 1

    async def _refresh_once(self) -> Credential:
        if self.reauthorization_required:
            raise AuthError(
                AuthErrorKind.INVALID_GRANT,
                f"Refresh is blocked until re-authorization. {REAUTHORIZE_HINT}",
            )
        previous = self._credential
        if previous is None:
            raise AuthError(
                AuthErrorKind.INVALID_GRANT,
                f"No refresh token is available. {REAUTHORIZE_HINT}",
            )
        refresh_token = previous.refresh_token
        if refresh_token in self._submitted_refresh_tokens:
            self._require_reauthorization("refresh token was already submitted")
            raise AuthError(
                AuthErrorKind.INVALID_GRANT,
                f"Refusing to reuse a submitted refresh token. {REAUTHORIZE_HINT}",
            )

        self._submitted_refresh_tokens.add(refresh_token)
        try:
            credential = await self._endpoint.refresh(refresh_token)
        except AuthError as error:
            if self._credential is not previous:
                # An authorization-code exchange installed a newer credential meanwhile.
                LOGGER.info("Refresh of a superseded credential failed: %s", error.description)
                return self._credential
            self._handle_refresh_failure(refresh_token, error)
            raise

        if self._credential is not previous:
            LOGGER.info("Discarding refresh result for a superseded credential")
            return self._credential

        if credential.refresh_token == refresh_token:
            # Provider did not rotate; the old token stays valid.
            self._submitted_refresh_tokens.discard(refresh_token)
        self._credential = credential
        self.refresh_count += 1
        LOGGER.info("Access token refreshed; expires at %s", credential.expires_at)
        await self._persist(credential)
        return credential

    def _handle_refresh_failure(self, refresh_token: str, error: AuthError) -> None:
        if not error.sent:
            self._submitted_refresh_tokens.discard(refresh_token)

        if error.kind is AuthErrorKind.INVALID_GRANT:
            self._require_reauthorization("provider returned invalid_grant")
        elif error.kind is AuthErrorKind.INVALID_CLIENT:
            LOGGER.error("Token refresh rejected client credentials: %s", error.description)
        elif error.sent:
            # The provider may have rotated the token without us seeing the reply.
            LOGGER.warning(
                "Token refresh outcome unknown (%s); the refresh token may have been consumed",
                error.description,
            )
            self._require_reauthorization("refresh outcome unknown")
        else:
            LOGGER.warning("Token refresh failed before reaching provider: %s", error.description)

    def _require_reauthorization(self, reason: str) -> None:
        if not self.reauthorization_required:
            LOGGER.critical("OAuth refresh failed (%s). %s", reason, REAUTHORIZE_HINT)
        self.reauthorization_required = True

    async def _persist(self, credential: Credential) -> None:
        try:
            await self._store.save(credential)
        except (OSError, RuntimeError) as error:
            self.last_persist_error = str(error)
            LOGGER.error("Failed to persist OAuth credential: %s", error)
        else:
            self.last_persist_error = None

    # -- inspection --------------------------------------------------------------

    def authorization_url(self, state: str | None = None) -> tuple[str, str]:
        if not self._authorize_url or not self._redirect_uri:
            raise RuntimeError("Authorization URL and redirect URI must be configured.")
        state = state or secrets.token_urlsafe(24)
        url = build_authorization_url(
            self._authorize_url,
            client_id=self._endpoint.client_id,
            redirect_uri=self._redirect_uri,
            scopes=self._scopes,
            state=state,
        )
        return url, state

    @property
    def redirect_uri(self) -> str | None:
        return self._redirect_uri

    def status(self) -> dict:
        credential = self._credential
        now = self._clock()
        payload: dict = {
            "authenticated": bool(credential and credential.access_token),
            "reauthorization_required": self.reauthorization_required,
            "refresh_in_progress": self._refresh_task is not None,
            "token_endpoint_auth_method": self._endpoint.preferred_method,
            "last_persist_error": self.last_persist_error,
        }
        if credential is not None:
            payload.update(
                {
                    "expires_at": credential.expires_at,
                    "expires_in": max(0, int(credential.expires_at - now)),
                    "scope": sorted(credential.scope),
                    "token_type": credential.token_type,
                }
            )
        return payload
