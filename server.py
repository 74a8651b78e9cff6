from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from auth.oauth2 import TokenEndpoint
from auth.token_manager import OAuthTokenManager
from auth.token_store import CredentialStore, FileCredentialStore
from bridge.constants import LOGGER
from bridge.env import BridgeSettings, load_env, load_settings, setup_logging
from bridge.framing import BridgeContext, LineProtocolBridge, Write
from bridge.http import ResourceClient, build_http_client
from bridge.router import RequestRouter
from bridge.stdio import StdoutWriter, run_stdio


@dataclass
class BridgeApp:
    context: BridgeContext
    bridge: LineProtocolBridge
    router: RequestRouter
    token_manager: OAuthTokenManager
    resource_client: ResourceClient
    token_http: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.resource_client.aclose()
        await self.token_http.aclose()


def build_bridge(
    settings: BridgeSettings,
    *,
    write: Write,
    store: CredentialStore | None = None,
    debug_enabled: bool = False,
    token_transport: httpx.AsyncBaseTransport | None = None,
    resource_transport: httpx.AsyncBaseTransport | None = None,
) -> BridgeApp:
    token_http = httpx.AsyncClient(transport=token_transport)
    endpoint = TokenEndpoint(
        settings.token_url,
        settings.client_id,
        settings.client_secret,
        auth_methods=settings.auth_methods,
        timeout=settings.timeout,
        client=token_http,
    )
    token_manager = OAuthTokenManager(
        endpoint,
        store or FileCredentialStore(settings.token_store_path),
        safety_margin=settings.refresh_margin,
        authorize_url=settings.authorize_url,
        redirect_uri=settings.redirect_uri,
        scopes=settings.scopes,
    )
    resource_client = ResourceClient(
        settings.resource_url,
        token_manager,
        client=build_http_client(
            timeout=settings.timeout,
            max_retries=settings.max_retries,
            debug_enabled=debug_enabled,
            transport=resource_transport,
        ),
        timeout=settings.timeout,
    )
    router = RequestRouter(
        token_manager,
        resource_client,
        forward_methods=settings.forward_methods,
    )
    context = BridgeContext()
    bridge = LineProtocolBridge(router, write, context=context)
    return BridgeApp(
        context=context,
        bridge=bridge,
        router=router,
        token_manager=token_manager,
        resource_client=resource_client,
        token_http=token_http,
    )


async def serve(settings: BridgeSettings, *, debug_enabled: bool = False) -> int:
    app = build_bridge(settings, write=StdoutWriter(), debug_enabled=debug_enabled)
    try:
        try:
            await app.token_manager.load(seed_refresh_token=settings.seed_refresh_token)
        except RuntimeError as error:
            LOGGER.error("Could not load stored credential: %s", error)
            return 1
        LOGGER.info("Bridge started; forwarding to %s", settings.resource_url)
        return await run_stdio(app.bridge, app.context)
    finally:
        await app.aclose()


def main() -> int:
    load_env()
    debug_enabled = setup_logging()
    try:
        settings = load_settings()
    except RuntimeError as error:
        LOGGER.error("Invalid configuration: %s", error)
        return 1
    return asyncio.run(serve(settings, debug_enabled=debug_enabled))


if __name__ == "__main__":
    raise SystemExit(main())
