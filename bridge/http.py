from __future__ import annotations

import asyncio
import itertools
import logging
import time
from enum import Enum

import httpx

from auth.models import AuthError, AuthErrorKind, Credential
from auth.token_manager import OAuthTokenManager

from .constants import LOGGER

AUTH_FAILURE_STATUSES = {401, 403}


def _seconds_until_reset(
    reset_header: str | None,
    retry_after: str | None = None,
    *,
    now: float | None = None,
) -> int | None:
    if retry_after is not None:
        try:
            return max(0, int(retry_after))
        except ValueError:
            pass
    if reset_header is None:
        return None
    try:
        reset_epoch = int(reset_header)
    except ValueError:
        return None

    current = time.time() if now is None else now
    return max(0, reset_epoch - int(current))


class RetryTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 2,
        max_wait: float = 30.0,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._max_wait = max_wait
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        retries = 0

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            response = await self._transport.handle_async_request(next_request)

            if self._max_retries == 0:
                return response

            if response.status_code == 429 and retries < min(self._max_retries, 1):
                wait_seconds = _seconds_until_reset(
                    response.headers.get("x-rate-limit-reset"),
                    response.headers.get("retry-after"),
                )
                if wait_seconds is None:
                    wait_seconds = 1
                if wait_seconds > self._max_wait:
                    self._logger.warning(
                        "Not retrying 429: server asked to wait %ss (limit %ss)",
                        wait_seconds,
                        self._max_wait,
                    )
                    return response
                self._logger.warning(
                    "Retrying 429 after %ss (%s %s)",
                    wait_seconds,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(wait_seconds)
                retries += 1
                continue

            if 500 <= response.status_code < 600 and retries < self._max_retries:
                backoff_seconds = 2**retries
                self._logger.warning(
                    "Retrying %s after %ss (%s %s)",
                    response.status_code,
                    backoff_seconds,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(backoff_seconds)
                retries += 1
                continue

            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


class ResourceErrorKind(str, Enum):
    AUTH_REJECTED = "auth_rejected"
    UPSTREAM = "upstream"
    UNAVAILABLE = "unavailable"


class ResourceError(RuntimeError):
    def __init__(
        self,
        kind: ResourceErrorKind,
        description: str,
        *,
        status: int | None = None,
        body: object = None,
    ) -> None:
        super().__init__(description)
        self.kind = kind
        self.description = description
        self.status = status
        self.body = body

    def to_data(self) -> dict:
        data: dict = {"kind": self.kind.value, "description": self.description}
        if self.status is not None:
            data["status"] = self.status
        if self.body is not None:
            data["body"] = self.body
        return data


def _friendly_error_message(status_code: int) -> str:
    if status_code in AUTH_FAILURE_STATUSES:
        return "Resource server rejected the credential after a refresh."
    if status_code == 404:
        return "The requested resource was not found on the resource server."
    if status_code == 429:
        return "Resource server rate limit exceeded. Please try again later."
    if status_code >= 500:
        return "Resource server is experiencing issues. Please try again later."
    return f"Resource server request failed with status {status_code}."


def _response_body(response: httpx.Response) -> object:
    try:
        return response.json()
    except ValueError:
        text = response.text
        if len(text) > 1000:
            text = text[:1000] + "...<truncated>"
        return text


def _credential_failure(error: AuthError) -> ResourceError:
    if error.kind in (AuthErrorKind.INVALID_GRANT, AuthErrorKind.INVALID_CLIENT):
        kind = ResourceErrorKind.AUTH_REJECTED
    else:
        kind = ResourceErrorKind.UNAVAILABLE
    return ResourceError(
        kind,
        f"Could not obtain an OAuth credential: {error.description}",
        status=error.status,
        body=error.to_data(),
    )


def build_http_client(
    *,
    timeout: float = 30.0,
    max_retries: int = 2,
    debug_enabled: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
    sleep=asyncio.sleep,
) -> httpx.AsyncClient:
    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        LOGGER.info("Resource request %s %s", request.method, request.url)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "Resource response %s %s -> %s",
            response.request.method,
            response.request.url,
            response.status_code,
        )
        if response.status_code >= 400:
            body = await response.aread()
            text = body.decode("utf-8", errors="replace")
            if len(text) > 1000:
                text = text[:1000] + "...<truncated>"
            LOGGER.warning("Resource error body: %s", text)

    retry_transport = RetryTransport(
        transport or httpx.AsyncHTTPTransport(),
        max_retries=max_retries,
        max_wait=timeout,
        sleep=sleep,
        logger=LOGGER,
    )
    return httpx.AsyncClient(
        timeout=timeout,
        transport=retry_transport,
        event_hooks={"request": [log_request], "response": [log_response]},
    )


class ResourceClient:
    """Forwards JSON-RPC calls to the remote resource server with a bearer token.

    A 401/403 forces one refresh and one retry; the second rejection is
    final.
    """

    def __init__(
        self,
        url: str,
        token_manager: OAuthTokenManager,
        *,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._token_manager = token_manager
        self._client = client
        self._timeout = timeout
        self._ids = itertools.count(1)

    async def call(self, method: str, params: object = None) -> object:
        payload: dict = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        credential = await self._credential()
        response = await self._send(payload, credential)

        if response.status_code in AUTH_FAILURE_STATUSES:
            LOGGER.warning(
                "Resource server returned %s for %s; refreshing credential and retrying once",
                response.status_code,
                method,
            )
            try:
                credential = await self._token_manager.refresh(stale=credential)
            except AuthError as error:
                raise _credential_failure(error) from error
            response = await self._send(payload, credential)
            if response.status_code in AUTH_FAILURE_STATUSES:
                raise ResourceError(
                    ResourceErrorKind.AUTH_REJECTED,
                    _friendly_error_message(response.status_code),
                    status=response.status_code,
                    body=_response_body(response),
                )

        return self._result(response)

    async def _credential(self) -> Credential:
        try:
            return await self._token_manager.get_valid_credential()
        except AuthError as error:
            raise _credential_failure(error) from error

    async def _send(self, payload: dict, credential: Credential) -> httpx.Response:
        try:
            return await self._client.post(
                self._url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {credential.access_token}",
                    "Accept": "application/json",
                },
                timeout=self._timeout,
            )
        except httpx.TimeoutException as error:
            raise ResourceError(
                ResourceErrorKind.UNAVAILABLE,
                f"Resource server timed out: {error.__class__.__name__}",
            ) from error
        except httpx.TransportError as error:
            raise ResourceError(
                ResourceErrorKind.UNAVAILABLE,
                f"Resource server is unreachable: {error}",
            ) from error

    def _result(self, response: httpx.Response) -> object:
        if not response.is_success:
            raise ResourceError(
                ResourceErrorKind.UPSTREAM,
                _friendly_error_message(response.status_code),
                status=response.status_code,
                body=_response_body(response),
            )

        try:
            body = response.json()
        except ValueError as error:
            raise ResourceError(
                ResourceErrorKind.UPSTREAM,
                "Resource server returned a non-JSON response.",
                status=response.status_code,
                body=_response_body(response),
            ) from error

        if isinstance(body, dict) and body.get("error") is not None:
            raise ResourceError(
                ResourceErrorKind.UPSTREAM,
                "Resource server returned a JSON-RPC error.",
                status=response.status_code,
                body=body["error"],
            )
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
