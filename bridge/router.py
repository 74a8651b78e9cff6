from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable

from mcp.types import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    ErrorData,
    Implementation,
)

from auth.models import AuthError, AuthorizationGrant
from auth.token_manager import OAuthTokenManager

from .constants import (
    APP_NAME,
    APP_VERSION,
    AUTH_ERROR,
    DEFAULT_FORWARD_METHODS,
    LOGGER,
    UNAVAILABLE_ERROR,
    UPSTREAM_ERROR,
)
from .http import ResourceClient, ResourceError, ResourceErrorKind

LocalHandler = Callable[[dict], Awaitable[object]]


class InvalidParamsError(ValueError):
    pass


class _MethodNotFound(LookupError):
    pass


def success_response(request_id, result: object) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response(request_id, code: int, message: str, data: object = None) -> dict:
    error = ErrorData(code=code, message=message, data=data)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


def is_valid_id(value: object) -> bool:
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, (str, int, float))


def _resource_error_response(request_id, error: ResourceError) -> dict:
    if error.kind is ResourceErrorKind.AUTH_REJECTED:
        return error_response(request_id, AUTH_ERROR, error.description, error.to_data())
    if error.kind is ResourceErrorKind.UNAVAILABLE:
        return error_response(request_id, UNAVAILABLE_ERROR, error.description, error.to_data())

    remote = error.body
    if (
        isinstance(remote, dict)
        and isinstance(remote.get("code"), int)
        and isinstance(remote.get("message"), str)
    ):
        return error_response(request_id, remote["code"], remote["message"], error.to_data())
    return error_response(request_id, UPSTREAM_ERROR, error.description, error.to_data())


class RequestRouter:
    """Maps one JSON-RPC message to a local handler or a forwarded call.

    Returns the response envelope, or ``None`` for notifications. Typed
    auth and resource failures become JSON-RPC errors here; anything else
    propagates to the caller.
    """

    def __init__(
        self,
        token_manager: OAuthTokenManager,
        resource_client: ResourceClient,
        *,
        forward_methods: Iterable[str] = DEFAULT_FORWARD_METHODS,
    ) -> None:
        self._token_manager = token_manager
        self._resource_client = resource_client
        self._forward_methods = set(forward_methods)
        self._local: dict[str, LocalHandler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "oauth/status": self._oauth_status,
            "oauth/authorizationUrl": self._oauth_authorization_url,
            "oauth/exchangeCode": self._oauth_exchange_code,
            "oauth/refresh": self._oauth_refresh,
        }

    async def handle(self, message: object) -> dict | None:
        if not isinstance(message, dict):
            return error_response(None, INVALID_REQUEST, "Invalid Request: expected a JSON object")

        request_id = message.get("id")
        if not is_valid_id(request_id):
            return error_response(
                None, INVALID_REQUEST, "Invalid Request: id must be a string, number or null"
            )

        method = message.get("method")
        if not isinstance(method, str) or not method:
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: method is required")

        if "id" not in message:
            LOGGER.info("Notification received: %s", method)
            return None

        params = message.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            return error_response(
                request_id, INVALID_PARAMS, "Invalid params: must be an object or array"
            )

        try:
            result = await self._dispatch(method, params)
        except InvalidParamsError as error:
            return error_response(request_id, INVALID_PARAMS, f"Invalid params: {error}")
        except AuthError as error:
            return error_response(request_id, AUTH_ERROR, error.description, error.to_data())
        except ResourceError as error:
            LOGGER.warning("Forwarded %s failed: %s", method, error.description)
            return _resource_error_response(request_id, error)
        except _MethodNotFound:
            return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        return success_response(request_id, result)

    async def _dispatch(self, method: str, params) -> object:
        handler = self._local.get(method)
        if handler is not None:
            return await handler(params if isinstance(params, dict) else {})
        if method in self._forward_methods:
            if method == "tools/call":
                name = params.get("name") if isinstance(params, dict) else None
                if not isinstance(name, str) or not name:
                    raise InvalidParamsError("tool name is required")
            return await self._resource_client.call(method, params)
        raise _MethodNotFound(method)

    # -- local handlers ----------------------------------------------------------

    async def _initialize(self, params: dict) -> object:
        requested = params.get("protocolVersion")
        return {
            "protocolVersion": requested if isinstance(requested, str) else LATEST_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": Implementation(name=APP_NAME, version=APP_VERSION).model_dump(
                exclude_none=True
            ),
        }

    async def _ping(self, params: dict) -> object:
        del params
        return {}

    async def _oauth_status(self, params: dict) -> object:
        del params
        return self._token_manager.status()

    async def _oauth_authorization_url(self, params: dict) -> object:
        state = params.get("state")
        if state is not None and not isinstance(state, str):
            raise InvalidParamsError("state must be a string")
        url, state = self._token_manager.authorization_url(state)
        return {"url": url, "state": state}

    async def _oauth_exchange_code(self, params: dict) -> object:
        code = params.get("code")
        redirect_uri = params.get("redirect_uri") or self._token_manager.redirect_uri
        if not isinstance(code, str) or not code:
            raise InvalidParamsError("code is required")
        if not isinstance(redirect_uri, str) or not redirect_uri:
            raise InvalidParamsError("redirect_uri is required")
        await self._token_manager.exchange_authorization_code(
            AuthorizationGrant(code=code, redirect_uri=redirect_uri)
        )
        return self._token_manager.status()

    async def _oauth_refresh(self, params: dict) -> object:
        del params
        await self._token_manager.refresh()
        return self._token_manager.status()

