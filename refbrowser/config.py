"""Runtime configuration, read from the environment (and a .env file if present)."""

import os
import logging

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from refbrowser.views import LoadState

logger = logging.getLogger(__name__)

CDP_PORT = 9222
DEFAULT_CDP_URL = f"http://127.0.0.1:{CDP_PORT}"
DEFAULT_TIMEOUT_MS = 30000.0

ENV_PREFIX = "REFBROWSER_"


class RefBrowserConfig(BaseModel):
    cdp_url: str = DEFAULT_CDP_URL
    target_id: str | None = None
    navigation_timeout: float = Field(default=DEFAULT_TIMEOUT_MS, ge=0)
    action_timeout: float = Field(default=DEFAULT_TIMEOUT_MS, ge=0)
    wait_until: LoadState = "load"
    allowed_protocols: list[str] = Field(default_factory=lambda: ["http", "https"])
    allowed_directories: list[str] = Field(default_factory=list)

    @field_validator("cdp_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "RefBrowserConfig":
        """Build a config from ``REFBROWSER_*`` variables.

        Unset variables fall back to the model defaults. List variables are
        comma-separated (protocols) or ``os.pathsep``-separated (directories).
        """
        load_dotenv(env_file)
        values: dict = {}
        for field in ("cdp_url", "target_id", "navigation_timeout", "action_timeout", "wait_until"):
            raw = os.environ.get(ENV_PREFIX + field.upper())
            if raw:
                values[field] = raw
        protocols = os.environ.get(ENV_PREFIX + "ALLOWED_PROTOCOLS")
        if protocols is not None:
            values["allowed_protocols"] = [p.strip() for p in protocols.split(",") if p.strip()]
        directories = os.environ.get(ENV_PREFIX + "ALLOWED_DIRECTORIES")
        if directories is not None:
            values["allowed_directories"] = [d for d in directories.split(os.pathsep) if d]
        config = cls(**values)
        logger.debug(f"[Config] Loaded: {config.model_dump()}")
        return config
