"""Pydantic based configuration for the RP server."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_DB_PATH = DATA_DIR / "rp.db"
DEFAULT_STORE_DIR = DATA_DIR / "users"

MIN_CHALLENGE_BYTES = 16


class RPSettings(BaseSettings):
    """Runtime settings for the relying party."""

    model_config = SettingsConfigDict(env_prefix="PASSKEY_RP_")

    rp_id: str = Field(default="localhost", description="Relying Party identifier")
    rp_name: str = Field(default="WebAuthn Tutorial", description="Human readable RP name")
    origin: str = Field(
        default="http://localhost:3000",
        description="Expected origin for clientDataJSON validation",
    )
    timeout_ms: int = Field(default=60_000, gt=0, description="Ceremony timeout hint for clients")
    supported_algorithms: List[int] = Field(
        default_factory=lambda: [-7, -257],
        description="COSE algorithm identifiers the RP will accept",
    )
    challenge_bytes: int = Field(default=32, description="Size of generated challenges")
    challenge_ttl_seconds: int = Field(
        default=300,
        gt=0,
        description="How long a pending ceremony stays valid",
    )
    require_user_verification: bool = False
    conceal_unknown_users: bool = Field(
        default=False,
        description="Issue decoy login options for unknown usernames instead of a 404",
    )
    store_backend: Literal["sqlalchemy", "directory", "memory"] = "sqlalchemy"
    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_DB_PATH}",
        description="SQLAlchemy connection string used by the RP server",
    )
    store_directory: str = Field(
        default=str(DEFAULT_STORE_DIR),
        description="Directory holding one JSON document per user",
    )
    secret_key: str = Field(default="secret123", description="Flask session signing key")
    session_max_age: int = Field(default=86_400, gt=0, description="Session cookie lifetime")
    session_cookie_secure: bool = False
    log_level: str = "INFO"

    @field_validator("challenge_bytes")
    @classmethod
    def ensure_challenge_entropy(cls, value: int) -> int:
        if value < MIN_CHALLENGE_BYTES:
            raise ValueError(f"challenge_bytes must be at least {MIN_CHALLENGE_BYTES}")
        return value

    @field_validator("supported_algorithms")
    @classmethod
    def ensure_algorithms(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("supported_algorithms cannot be empty")
        return value
