import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".xcode-cli.json")


class CliConfig(BaseModel):
    """Local CLI state shared by the bridge and its client commands."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    endpoint: str | None = None
    default_tab_id: str | None = Field(default=None, alias="defaultTabId")


def read_config(path: Path = DEFAULT_CONFIG_PATH) -> CliConfig:
    try:
        return CliConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError):
        return CliConfig()


def write_config(config: CliConfig, path: Path = DEFAULT_CONFIG_PATH) -> None:
    path.write_text(
        config.model_dump_json(indent=2, exclude_none=True, by_alias=True) + "\n",
        encoding="utf-8",
    )


def save_endpoint(endpoint: str, path: Path = DEFAULT_CONFIG_PATH) -> None:
    config = read_config(path)
    config.endpoint = endpoint
    write_config(config, path)
    logger.debug("Saved endpoint %s to %s", endpoint, path)
