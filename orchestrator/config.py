import os
from typing import Mapping, Optional

from .errors import ConfigError


REQUIRED_VARS = ("GEMINI_API_KEY", "MCP_SERVER_BASE_URL", "MCP_SERVER_API_KEY")


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(environ.get(name, str(default)))
    except ValueError:
        return default


class Config:
    def __init__(
        self,
        gemini_api_key: str,
        mcp_base_url: str,
        mcp_api_key: str,
        gemini_model: str = "gemini-2.5-flash",
        http_timeout_sec: float = 15.0,
        generation_timeout_sec: float = 120.0,
        rate_limit: str = "30/minute",
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        # Secrets / upstreams
        self.gemini_api_key = gemini_api_key
        self.mcp_base_url = mcp_base_url.rstrip("/")
        self.mcp_api_key = mcp_api_key
        self.gemini_model = gemini_model

        # HTTP behavior
        self.http_timeout_sec = http_timeout_sec
        self.generation_timeout_sec = generation_timeout_sec
        self.rate_limit = rate_limit

        # Server
        self.host = host
        self.port = port


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build the process configuration, failing fast on any missing secret."""
    if environ is None:
        environ = os.environ

    missing = [name for name in REQUIRED_VARS if not environ.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    try:
        port = int(environ.get("PORT", "8080"))
    except ValueError:
        port = 8080

    return Config(
        gemini_api_key=environ["GEMINI_API_KEY"],
        mcp_base_url=environ["MCP_SERVER_BASE_URL"],
        mcp_api_key=environ["MCP_SERVER_API_KEY"],
        gemini_model=environ.get("GEMINI_MODEL", "gemini-2.5-flash"),
        http_timeout_sec=_float_env(environ, "HTTP_TIMEOUT_SEC", 15.0),
        generation_timeout_sec=_float_env(environ, "GENERATION_TIMEOUT_SEC", 120.0),
        rate_limit=environ.get("PLAN_RATE_LIMIT", "30/minute"),
        host=environ.get("HOST", "0.0.0.0"),
        port=port,
    )
