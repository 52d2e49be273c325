"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from constants import DEFAULT_RELAY_ORIGIN


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration (8099 matches the add-on ingress port)
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8099, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Hub (Home Assistant via Supervisor proxy)
    supervisor_token: Optional[str] = Field(default=None, env="SUPERVISOR_TOKEN")
    hub_ws_url: str = Field(default="ws://supervisor/core/api/websocket", env="HUB_WS_URL")
    hub_api_url: str = Field(default="http://supervisor/core/api", env="HUB_API_URL")

    # Relay
    relay_url: str = Field(default="", env="RELAY_URL")
    relay_override_path: str = Field(default="/data/royaframe_relay_override.json", env="RELAY_OVERRIDE_PATH")
    default_relay_origin: str = Field(default=DEFAULT_RELAY_ORIGIN, env="DEFAULT_RELAY_ORIGIN")

    # Persistent agent identity
    agent_identity_path: str = Field(default="/data/royaframe_agent.json", env="AGENT_IDENTITY_PATH")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="console", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("hub_api_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Endpoints are appended as '/config', '/states'."""
        return v.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
