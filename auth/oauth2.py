from __future__ import annotations

import base64
import urllib.parse
from collections.abc import Sequence

import httpx

from auth.models import AuthError, AuthErrorKind, Credential

CLIENT_SECRET_JSON = "client_secret_json"
CLIENT_SECRET_POST = "client_secret_post"
CLIENT_SECRET_BASIC = "client_secret_basic"

DEFAULT_AUTH_METHODS = (CLIENT_SECRET_JSON, CLIENT_SECRET_POST, CLIENT_SECRET_BASIC)

# Raised before any byte of the request reached the provider.
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def build_authorization_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scopes: Sequence[str],
    state: str,
) -> str:
    query = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "state": state,
    }
    if scopes:
        query["scope"] = " ".join(scopes)
    return f"{authorize_url}?{urllib.parse.urlencode(query)}"


def _basic_credentials(client_id: str, client_secret: str) -> str:
    # RFC 6749 section 2.3.1: form-encode each part before joining.
    user = urllib.parse.quote(client_id, safe="")
    password = urllib.parse.quote(client_secret, safe="")
    raw = f"{user}:{password}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _error_code(response: httpx.Response) -> tuple[str | None, object]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"], body
    return None, body


class TokenEndpoint:
    """Client for an OAuth2 provider's token endpoint.

    Providers disagree on how the client secret travels, so every request
    walks ``auth_methods`` in order and only moves on when the provider
    rejects the client identity. The method that gets past client
    authentication is remembered and tried first from then on.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        auth_methods: Sequence[str] = DEFAULT_AUTH_METHODS,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        unknown = [method for method in auth_methods if method not in DEFAULT_AUTH_METHODS]
        if unknown:
            raise RuntimeError(f"Unsupported token endpoint auth methods: {', '.join(unknown)}")
        if not auth_methods:
            raise RuntimeError("At least one token endpoint auth method is required.")

        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._auth_methods = list(auth_methods)
        self._timeout = timeout
        self._client = client
        self.preferred_method: str | None = None

    def _ordered_methods(self) -> list[str]:
        if self.preferred_method is None:
            return list(self._auth_methods)
        rest = [method for method in self._auth_methods if method != self.preferred_method]
        return [self.preferred_method, *rest]

    def _build_request(self, method: str, grant: dict[str, str]) -> dict:
        if method == CLIENT_SECRET_JSON:
            return {
                "json": {
                    **grant,
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                }
            }
        if method == CLIENT_SECRET_POST:
            return {
                "data": {
                    **grant,
                    "client_id": self.client_id,
                    "client_secret": self._client_secret,
                }
            }
        return {
            "data": {**grant, "client_id": self.client_id},
            "headers": {
                "Authorization": f"Basic {_basic_credentials(self.client_id, self._client_secret)}"
            },
        }

    async def _post(self, http_client: httpx.AsyncClient, method: str, grant: dict[str, str]):
        try:
            return await http_client.post(
                self.token_url,
                timeout=self._timeout,
                **self._build_request(method, grant),
            )
        except httpx.TimeoutException as error:
            raise AuthError(
                AuthErrorKind.NETWORK,
                f"Token request timed out: {error.__class__.__name__}",
                sent=not isinstance(error, _UNSENT_ERRORS),
                retryable=isinstance(error, _UNSENT_ERRORS),
            ) from error
        except httpx.TransportError as error:
            raise AuthError(
                AuthErrorKind.NETWORK,
                f"Token request failed: {error}",
                sent=not isinstance(error, _UNSENT_ERRORS),
                retryable=isinstance(error, _UNSENT_ERRORS),
            ) from error

    async def _token_request(
        self,
        grant: dict[str, str],
        *,
        previous_refresh_token: str | None = None,
    ) -> Credential:
        own_client = self._client is None
        http_client = self._client or httpx.AsyncClient()

        try:
            client_rejection = AuthError(
                AuthErrorKind.INVALID_CLIENT,
                "No token endpoint auth method is configured.",
                sent=False,
            )
            for method in self._ordered_methods():
                response = await self._post(http_client, method, grant)
                if response.is_success:
                    self.preferred_method = method
                    try:
                        return Credential.from_payload(
                            response.json(),
                            previous_refresh_token=previous_refresh_token,
                        )
                    except ValueError as error:
                        raise AuthError(
                            AuthErrorKind.PROVIDER_ERROR,
                            f"Token response was malformed: {error}",
                            status=response.status_code,
                        ) from error

                code, body = _error_code(response)
                if code == "invalid_client" or (code is None and response.status_code == 401):
                    client_rejection = AuthError(
                        AuthErrorKind.INVALID_CLIENT,
                        f"Provider rejected client credentials ({method}).",
                        status=response.status_code,
                        body=body,
                        # Client authentication fails before the grant is evaluated.
                        sent=False,
                    )
                    continue

                self.preferred_method = method
                if code == "invalid_grant":
                    raise AuthError(
                        AuthErrorKind.INVALID_GRANT,
                        "Provider rejected the grant as invalid or already used.",
                        status=response.status_code,
                        body=body,
                    )
                raise AuthError(
                    AuthErrorKind.PROVIDER_ERROR,
                    f"Token request failed with status {response.status_code}.",
                    status=response.status_code,
                    body=body,
                )

            raise client_rejection
        finally:
            if own_client:
                await http_client.aclose()

    async def exchange_code(self, code: str, redirect_uri: str) -> Credential:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> Credential:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            previous_refresh_token=refresh_token,
        )
