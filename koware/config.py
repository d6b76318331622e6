"""
Provider options and environment-driven settings.

Each provider gets an immutable options object. ``Settings`` collects them
from ``KOWARE_*`` environment variables, e.g.
``KOWARE_ALLANIME__API_BASE=https://api.example``.
"""
from typing import Optional, FrozenSet

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0"

MEGACLOUD_HOST = "https://megacloud.blog"
MEGACLOUD_KEY_URL = "https://raw.githubusercontent.com/yogesh-hacker/MegacloudKeys/refs/heads/main/keys.json"


class AllAnimeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    base_host: Optional[str] = None
    api_base: Optional[str] = None
    referer: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    translation_type: str = "sub"
    search_limit: int = 20
    source_timeout: float = 5.0  # per source, seconds
    manifest_timeout: float = 10.0

    @property
    def is_configured(self) -> bool:
        return bool(
            self.enabled
            and (self.base_host or "").strip()
            and (self.api_base or "").strip()
            and (self.referer or "").strip()
        )


class HiAnimeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    base_url: Optional[str] = None
    referer: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    preferred_server: str = "hd-1"
    search_limit: int = 20
    timeout: float = 10.0
    megacloud_host: str = MEGACLOUD_HOST
    megacloud_key_url: str = MEGACLOUD_KEY_URL

    @field_validator("preferred_server")
    @classmethod
    def _lower_server(cls, value: str) -> str:
        return (value or "hd-1").strip().lower()

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and (self.base_url or "").strip())

    @property
    def effective_referer(self) -> str:
        return (self.referer or "").strip() or (self.base_url or "").strip()


class ProviderToggleOptions(BaseModel):
    """Provider names switched off by the user, compared case-insensitively."""
    model_config = ConfigDict(frozen=True)

    disabled_providers: FrozenSet[str] = frozenset()

    @field_validator("disabled_providers", mode="before")
    @classmethod
    def _lower_names(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(v.strip().lower() for v in (value or ()) if v and v.strip())

    def is_enabled(self, name: str) -> bool:
        return (name or "").strip().lower() not in self.disabled_providers


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="KOWARE_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    allanime: AllAnimeOptions = AllAnimeOptions()
    hianime: HiAnimeOptions = HiAnimeOptions()
    providers: ProviderToggleOptions = ProviderToggleOptions()

    http_attempts: int = 3
    http_backoff: float = 0.2
    log_level: str = "INFO"
