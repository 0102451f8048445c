"""Process settings loaded from the environment."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from HUBRELAY_* environment variables or a .env file.

    Tuning that users change at runtime (retry limits, poll intervals) lives
    in the persisted Config instead, see ``hubrelay config set``.
    """

    model_config = SettingsConfigDict(env_prefix="HUBRELAY_", env_file=".env", extra="ignore")

    data_dir: str = ".hubrelay"

    # External service
    api_key: str = ""
    region: str = "hongkong"
    base_url: Optional[str] = Field(None, description="Overrides the region URL")
    http_timeout: float = 45.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False
