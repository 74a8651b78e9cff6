import base64
import json
import time
import urllib.parse

import httpx
import pytest

from auth.models import AuthError, AuthErrorKind
from auth.oauth2 import (
    CLIENT_SECRET_BASIC,
    CLIENT_SECRET_JSON,
    CLIENT_SECRET_POST,
    TokenEndpoint,
    build_authorization_url,
)
from tests.oauth_helpers import TOKEN_URL, token_payload


def _form(request: httpx.Request) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(request.content.decode("utf-8")))


def _scripted(responses: list):
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        result = responses[min(len(seen), len(responses)) - 1]
        if isinstance(result, Exception):
            raise result
        return result

    return handler, seen


def _endpoint(handler, **kwargs) -> TokenEndpoint:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TokenEndpoint(TOKEN_URL, "client-1", "s3cr:et/", client=client, **kwargs)


def test_build_authorization_url_contains_required_params() -> None:
    url = build_authorization_url(
        "https://auth.example.com/oauth/authorize",
        client_id="client123",
        redirect_uri="http://localhost:3000/callback",
        scopes=["tools.read", "tools.write"],
        state="state123",
    )

    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qs(parsed.query)

    assert parsed.path == "/oauth/authorize"
    assert query["client_id"] == ["client123"]
    assert query["redirect_uri"] == ["http://localhost:3000/callback"]
    assert query["response_type"] == ["code"]
    assert query["state"] == ["state123"]
    assert query["scope"] == ["tools.read tools.write"]


def test_build_authorization_url_without_scopes() -> None:
    url = build_authorization_url(
        "https://auth.example.com/oauth/authorize",
        client_id="client123",
        redirect_uri="http://localhost:3000/callback",
        scopes=[],
        state="s",
    )

    assert "scope=" not in url


def test_unknown_auth_method_rejected() -> None:
    with pytest.raises(RuntimeError, match="Unsupported token endpoint auth methods"):
        TokenEndpoint(TOKEN_URL, "id", "secret", auth_methods=["client_secret_jwt"])


@pytest.mark.asyncio
async def test_exchange_code_success(httpx_mock) -> None:
    httpx_mock.add_response(
        url=TOKEN_URL,
        method="POST",
        json=token_payload("access-1", "refresh-1", expires_in=7200, scope="a b"),
    )

    endpoint = TokenEndpoint(TOKEN_URL, "id", "secret")
    credential = await endpoint.exchange_code("code123", "http://localhost:3000/callback")

    assert credential.access_token == "access-1"
    assert credential.refresh_token == "refresh-1"
    assert credential.scope == frozenset({"a", "b"})
    assert credential.token_type == "bearer"
    assert credential.expires_at > time.time() + 7000

    request = httpx_mock.get_request()
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {
        "grant_type": "authorization_code",
        "code": "code123",
        "redirect_uri": "http://localhost:3000/callback",
        "client_id": "id",
        "client_secret": "secret",
    }


@pytest.mark.asyncio
async def test_refresh_sends_refresh_token_grant() -> None:
    handler, seen = _scripted([httpx.Response(200, json=token_payload("access-2", "refresh-2"))])
    endpoint = _endpoint(handler, auth_methods=[CLIENT_SECRET_POST])

    credential = await endpoint.refresh("refresh-1")

    assert credential.refresh_token == "refresh-2"
    assert _form(seen[0]) == {
        "grant_type": "refresh_token",
        "refresh_token": "refresh-1",
        "client_id": "client-1",
        "client_secret": "s3cr:et/",
    }


@pytest.mark.asyncio
async def test_refresh_without_rotation_keeps_previous_token() -> None:
    handler, _ = _scripted([httpx.Response(200, json=token_payload("access-2", None))])
    endpoint = _endpoint(handler)

    credential = await endpoint.refresh("refresh-1")

    assert credential.access_token == "access-2"
    assert credential.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_basic_auth_encoding() -> None:
    handler, seen = _scripted([httpx.Response(200, json=token_payload("a", "r"))])
    endpoint = _endpoint(handler, auth_methods=[CLIENT_SECRET_BASIC])

    await endpoint.refresh("refresh-1")

    scheme, _, encoded = seen[0].headers["authorization"].partition(" ")
    assert scheme == "Basic"
    assert base64.b64decode(encoded).decode() == "client-1:s3cr%3Aet%2F"
    assert "client_secret" not in _form(seen[0])


@pytest.mark.asyncio
async def test_falls_through_on_invalid_client_and_caches_method() -> None:
    handler, seen = _scripted(
        [
            httpx.Response(401, json={"error": "invalid_client"}),
            httpx.Response(200, json=token_payload("a1", "r1")),
            httpx.Response(200, json=token_payload("a2", "r2")),
        ]
    )
    endpoint = _endpoint(handler)

    await endpoint.exchange_code("code", "http://localhost:3000/callback")

    assert endpoint.preferred_method == CLIENT_SECRET_POST
    assert seen[0].headers["content-type"] == "application/json"
    assert seen[1].headers["content-type"] == "application/x-www-form-urlencoded"

    await endpoint.refresh("r1")

    assert len(seen) == 3
    assert seen[2].headers["content-type"] == "application/x-www-form-urlencoded"


@pytest.mark.asyncio
async def test_invalid_client_after_all_methods() -> None:
    handler, seen = _scripted([httpx.Response(401, text="unauthorized")])
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.INVALID_CLIENT
    assert excinfo.value.sent is False
    assert len(seen) == 3
    assert endpoint.preferred_method is None


@pytest.mark.asyncio
async def test_no_auth_method_raises_invalid_client() -> None:
    handler, seen = _scripted([httpx.Response(200, json=token_payload("access-2", "refresh-2"))])
    endpoint = _endpoint(handler)
    endpoint._auth_methods = []

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.INVALID_CLIENT
    assert excinfo.value.sent is False
    assert seen == []


@pytest.mark.asyncio
async def test_invalid_grant_does_not_fall_through() -> None:
    handler, seen = _scripted(
        [httpx.Response(400, json={"error": "invalid_grant", "error_description": "used"})]
    )
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.INVALID_GRANT
    assert excinfo.value.status == 400
    assert excinfo.value.body == {"error": "invalid_grant", "error_description": "used"}
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_server_error_is_provider_error() -> None:
    handler, _ = _scripted([httpx.Response(503, text="maintenance")])
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.exchange_code("code", "http://localhost:3000/callback")

    assert excinfo.value.kind is AuthErrorKind.PROVIDER_ERROR
    assert excinfo.value.status == 503
    assert excinfo.value.body == "maintenance"


@pytest.mark.asyncio
async def test_malformed_success_is_provider_error() -> None:
    handler, _ = _scripted([httpx.Response(200, json={"token_type": "bearer"})])
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_connect_error_is_unsent_network_error() -> None:
    handler, _ = _scripted([httpx.ConnectError("connection refused")])
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.NETWORK
    assert excinfo.value.sent is False
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_read_timeout_is_ambiguous_network_error() -> None:
    handler, _ = _scripted([httpx.ReadTimeout("timed out")])
    endpoint = _endpoint(handler)

    with pytest.raises(AuthError) as excinfo:
        await endpoint.refresh("refresh-1")

    assert excinfo.value.kind is AuthErrorKind.NETWORK
    assert excinfo.value.sent is True
    assert excinfo.value.retryable is False
