import os
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    API_BASE_URL: str
    API_TOKEN: str | None = None
    SOCKET_URL: str | None = None  # Derived from API_BASE_URL when unset
    SOCKET_NAMESPACE: str = "/chat"
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    DELETE_CONFIRMATION_TIMEOUT_SECONDS: float = 3.0
    RECONNECT_BASE_DELAY_SECONDS: float = 1.0
    RECONNECT_MAX_DELAY_SECONDS: float = 30.0
    PENDING_MATCH_WINDOW_SECONDS: float = (
        30.0  # Max distance between a local send and its server echo
    )
    DEFERRED_PATCH_LIMIT: int = 256
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @classmethod
    def get_required_fields(cls) -> list[str]:
        """Get all required fields (those without default values)."""
        return [name for name, field in cls.model_fields.items() if field.is_required()]

    def __init__(self, **kwargs):
        try:
            super().__init__(**kwargs)
        except ValidationError as e:
            env_file = Path(".env")
            missing_fields = [
                field
                for field in self.get_required_fields()
                if field not in kwargs and not os.getenv(field)
            ]

            if missing_fields:
                fields_str = "\n".join(f"- {field}" for field in missing_fields)
                example_env = "\n".join(
                    f"{field}=your_{field.lower()}_here" for field in missing_fields
                )

                if not env_file.exists():
                    error_msg = (
                        f"\n\nError: Missing required environment variables!"
                        f"\nMissing variables: {fields_str}"
                        f"\n\nCreate a .env file with:"
                        f"\n{example_env}"
                    )
                else:
                    error_msg = (
                        f"\n\nError: Missing required environment variables!"
                        f"\nMissing variables: {fields_str}"
                        f"\n\nPlease add these to your .env file or set as environment variables."
                    )

                raise ValueError(error_msg) from e
            else:
                raise

    @property
    def socket_url(self) -> str:
        """Push channel base URL; the API URL without its `/api` suffix."""
        if self.SOCKET_URL:
            return self.SOCKET_URL.rstrip("/")
        base = self.API_BASE_URL.rstrip("/")
        if base.endswith("/api"):
            base = base[: -len("/api")]
        return base


@lru_cache
def get_settings() -> Settings:
    return Settings()
