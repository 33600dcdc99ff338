from pathlib import Path

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_http_bridge.errors import ConfigError

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MCP_BRIDGE_",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 8080
    path: str = "/mcp"
    persist_endpoint: bool = True
    config_path: Path = Path(".xcode-cli.json")

    # Tool provider launched over stdio
    backend_command: str = "xcrun"
    backend_args: list[str] = ["mcpbridge"]

    json_response: bool = False
    log_level: str = "INFO"

    @field_validator("port", mode="before")
    @classmethod
    def _reject_bool_port(cls, value):
        if isinstance(value, bool):
            raise ValueError(f"Invalid port '{value}'. Use an integer between 1 and 65535.")
        return value

    @field_validator("port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(
                f"Invalid port '{value}'. Use an integer between 1 and 65535."
            )
        return value

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        if not value.startswith("/"):
            return f"/{value}"
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        # the set both logging and uvicorn accept by name
        if level not in LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{value}'. Use one of {', '.join(LOG_LEVELS)}."
            )
        return level

    @property
    def endpoint_url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"


def load_settings(**overrides) -> BridgeSettings:
    """Build settings from the environment, `.env` and explicit overrides."""
    try:
        return BridgeSettings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigError(f"Invalid bridge configuration: {problems}") from exc
