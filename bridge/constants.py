from __future__ import annotations

import logging

LOGGER = logging.getLogger("bridge.relay")
APP_NAME = "oauth-stdio-bridge"
APP_VERSION = "0.1.0"

DEFAULT_TOKEN_STORE_PATH = "~/.mcp-bridge/token.json"
DEFAULT_REDIRECT_URI = "http://localhost:3000/callback"

DEFAULT_FORWARD_METHODS = (
    "tools/list",
    "tools/call",
    "resources/list",
    "resources/read",
    "prompts/list",
    "prompts/get",
)

# Implementation-defined server error codes (JSON-RPC reserves -32000..-32099).
AUTH_ERROR = -32001
UPSTREAM_ERROR = -32002
UNAVAILABLE_ERROR = -32003
