"""Summary: Application configuration for mailharvest.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, storage, and the LLM endpoint.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    store_backend: str
    db_path: str
    ai_provider: str
    ollama_url: str
    ollama_model: str
    llm_temperature: float
    llm_top_p: float
    llm_top_k: int
    api_host: str
    api_port: int
    api_key: str
    google_client_id: str
    google_client_secret: str
    microsoft_client_id: str
    microsoft_client_secret: str
    oauth_redirect_uri: str
    google_auth_url: str
    google_token_url: str
    google_userinfo_url: str
    google_api_base_url: str
    microsoft_auth_url: str
    microsoft_token_url: str
    microsoft_graph_base_url: str
    handshake_ttl_seconds: int
    token_refresh_margin_seconds: int
    ingest_batch_size: int
    http_timeout_seconds: float
    llm_timeout_seconds: float
    request_timeout_seconds: float
    token_secret: str
    log_level: str

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            store_backend=os.getenv("MAILHARVEST_STORE_BACKEND", defaults["store_backend"]),
            db_path=os.getenv("MAILHARVEST_DB_PATH", defaults["db_path"]),
            ai_provider=os.getenv("MAILHARVEST_AI_PROVIDER", defaults["ai_provider"]),
            ollama_url=os.getenv("OLLAMA_URL", defaults["ollama_url"]),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults["ollama_model"]),
            llm_temperature=float(os.getenv("OLLAMA_TEMPERATURE", defaults["llm_temperature"])),
            llm_top_p=float(os.getenv("OLLAMA_TOP_P", defaults["llm_top_p"])),
            llm_top_k=int(os.getenv("OLLAMA_TOP_K", defaults["llm_top_k"])),
            api_host=os.getenv("MAILHARVEST_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("MAILHARVEST_API_PORT", defaults["api_port"])),
            api_key=os.getenv("MAILHARVEST_API_KEY", defaults["api_key"]),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            microsoft_client_id=os.getenv("MICROSOFT_CLIENT_ID", defaults["microsoft_client_id"]),
            microsoft_client_secret=os.getenv(
                "MICROSOFT_CLIENT_SECRET", defaults["microsoft_client_secret"]
            ),
            oauth_redirect_uri=os.getenv(
                "MAILHARVEST_OAUTH_REDIRECT_URI", defaults["oauth_redirect_uri"]
            ),
            google_auth_url=os.getenv("GOOGLE_AUTH_URL", defaults["google_auth_url"]),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            google_userinfo_url=os.getenv("GOOGLE_USERINFO_URL", defaults["google_userinfo_url"]),
            google_api_base_url=os.getenv("GOOGLE_API_BASE_URL", defaults["google_api_base_url"]),
            microsoft_auth_url=os.getenv("MICROSOFT_AUTH_URL", defaults["microsoft_auth_url"]),
            microsoft_token_url=os.getenv("MICROSOFT_TOKEN_URL", defaults["microsoft_token_url"]),
            microsoft_graph_base_url=os.getenv(
                "MICROSOFT_GRAPH_BASE_URL", defaults["microsoft_graph_base_url"]
            ),
            handshake_ttl_seconds=int(
                os.getenv("MAILHARVEST_HANDSHAKE_TTL_SECONDS", defaults["handshake_ttl_seconds"])
            ),
            token_refresh_margin_seconds=int(
                os.getenv(
                    "MAILHARVEST_TOKEN_REFRESH_MARGIN_SECONDS",
                    defaults["token_refresh_margin_seconds"],
                )
            ),
            ingest_batch_size=int(
                os.getenv("MAILHARVEST_INGEST_BATCH_SIZE", defaults["ingest_batch_size"])
            ),
            http_timeout_seconds=float(
                os.getenv("MAILHARVEST_HTTP_TIMEOUT_SECONDS", defaults["http_timeout_seconds"])
            ),
            llm_timeout_seconds=float(
                os.getenv("MAILHARVEST_LLM_TIMEOUT_SECONDS", defaults["llm_timeout_seconds"])
            ),
            request_timeout_seconds=float(
                os.getenv(
                    "MAILHARVEST_REQUEST_TIMEOUT_SECONDS", defaults["request_timeout_seconds"]
                )
            ),
            token_secret=os.getenv("MAILHARVEST_TOKEN_SECRET", defaults["token_secret"]),
            log_level=os.getenv("MAILHARVEST_LOG_LEVEL", defaults["log_level"]),
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip("\"'"))
