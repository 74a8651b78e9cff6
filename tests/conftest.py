import pytest

from bridge.env import BridgeSettings
from tests.oauth_helpers import RESOURCE_URL, TOKEN_URL


@pytest.fixture
def bridge_settings(tmp_path) -> BridgeSettings:
    return BridgeSettings(
        client_id="client-1",
        client_secret="secret-1",
        token_url=TOKEN_URL,
        resource_url=RESOURCE_URL,
        authorize_url="https://auth.example.com/oauth/authorize",
        redirect_uri="http://localhost:3000/callback",
        scopes=["tools.read"],
        seed_refresh_token=None,
        auth_methods=["client_secret_json", "client_secret_post", "client_secret_basic"],
        token_store_path=tmp_path / "token.json",
        timeout=5.0,
        max_retries=0,
        refresh_margin=60.0,
        forward_methods=["tools/list", "tools/call"],
    )
