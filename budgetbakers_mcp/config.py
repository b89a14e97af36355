"""Runtime configuration read from ``BUDGETBAKERS_*`` environment variables."""

import os
from pathlib import Path
from typing import Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigurationError
from .models import Credentials

DEFAULT_API_URL = "https://web-new.budgetbakers.com"


def load_env_file(path: Path) -> None:
    """Load ``KEY=value`` lines from a .env file into ``os.environ``.

    Existing environment variables always win.
    """
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                value = value.strip().strip('"').strip("'")
                if key.strip() not in os.environ:
                    os.environ[key.strip()] = value


class Settings(BaseModel):  # type: ignore[misc]
    """Validated bridge settings."""

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    api_url: str = Field(default=DEFAULT_API_URL, min_length=1)
    locale: str = Field(default="es-ES", min_length=2)
    request_timeout: float = Field(default=30.0, gt=0, le=300)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("api_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_url must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {
            "email": env.get("BUDGETBAKERS_EMAIL") or None,
            "password": env.get("BUDGETBAKERS_PASSWORD") or None,
            "api_url": env.get("BUDGETBAKERS_API_URL") or DEFAULT_API_URL,
            "locale": env.get("BUDGETBAKERS_LOCALE") or "es-ES",
            "request_timeout": env.get("BUDGETBAKERS_REQUEST_TIMEOUT") or 30.0,
            "log_level": env.get("BUDGETBAKERS_LOG_LEVEL") or "INFO",
        }
        return cls(**values)

    def default_credentials(self) -> Credentials:
        """Credentials used for implicit (cache-miss) authentication."""
        if not self.email or not self.password:
            raise ConfigurationError(
                "BUDGETBAKERS_EMAIL and BUDGETBAKERS_PASSWORD environment variables are required"
            )
        return Credentials(email=self.email, password=self.password)
