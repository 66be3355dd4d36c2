"""Configuration management for the bridge server."""
import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Server configuration
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8765"))
    DEBUG: bool = _flag(os.getenv("DEBUG", "false"))

    SERVER_NAME: str = os.getenv("SERVER_NAME", "engine-mcp-bridge")
    VERSION: str = os.getenv("BRIDGE_VERSION", "0.1.0")

    # CORS settings
    ALLOWED_ORIGINS: list[str] = _split_list(os.getenv("ALLOWED_ORIGINS", "*"))

    # "module:callable" returning the engine collaborator
    ENGINE_FACTORY: str = os.getenv("ENGINE_FACTORY", "")

    # Model override for the web tools (search/fetch) only
    TOOLS_DEFAULT_MODEL: str | None = os.getenv("TOOLS_DEFAULT_MODEL") or None
    REBINDABLE_TOOLS: list[str] = _split_list(
        os.getenv("REBINDABLE_TOOLS", "google_web_search,web_fetch")
    )

    # Static part of the /v1/models listing
    AVAILABLE_MODELS: list[str] = _split_list(
        os.getenv("AVAILABLE_MODELS", "gemini-2.5-pro,gemini-2.5-flash")
    )

    ENABLE_MODEL_PROXY_TOOL: bool = _flag(os.getenv("ENABLE_MODEL_PROXY_TOOL", "false"))

    # Request bodies longer than this are truncated in debug logs
    LOG_BODY_LIMIT: int = int(os.getenv("LOG_BODY_LIMIT", "300"))

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if cls.PORT <= 0:
            raise ValueError(f"Invalid port number: {cls.PORT}")


# Validate config on import
Config.validate()
