"""Runtime settings for chatbridge services."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from chatbridge.schemas import Capability


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if not value:
        return default
    parsed: list[int] = []
    for token in value.split(","):
        token = token.strip()
        if token.isdigit() and int(token) > 0:
            parsed.append(int(token))
    return tuple(parsed) or default


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_APP_NAME", "chatbridge-api"))
    log_level: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_LOG_LEVEL", "INFO"))

    # Shared Gemini key; each capability may override it with its own key.
    gemini_api_key: str | None = field(
        default_factory=lambda: _first_env("GEMINI_API_KEY", "GOOGLE_API_KEY", "Gemini_API_Key")
    )
    translate_api_key: str | None = field(default_factory=lambda: os.getenv("GOOGLE_TRANSLATE_API_KEY"))
    suggest_api_key: str | None = field(default_factory=lambda: os.getenv("GOOGLE_SUGGEST_API_KEY"))
    segment_api_key: str | None = field(default_factory=lambda: os.getenv("GOOGLE_SEGMENT_API_KEY"))

    translate_model: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_TRANSLATE_MODEL", "gemini-2.5-flash-lite")
    )
    suggest_model: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_SUGGEST_MODEL", "gemini-2.5-flash"))
    segment_model: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_SEGMENT_MODEL", "gemini-2.5-flash"))
    health_model: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_HEALTH_MODEL", "gemini-2.5-flash-lite")
    )
    image_model: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_IMAGE_MODEL", "gemini-2.5-flash"))
    # Retried once when the configured model name is rejected upstream.
    fallback_model: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_FALLBACK_MODEL", "gemini-2.5-flash"))

    places_api_key: str | None = field(
        default_factory=lambda: _first_env("GOOGLE_PLACES_API_KEY", "GOOGLE_MAPS_API_KEY")
    )

    # Prefix for attachment URLs stored as relative paths.
    public_base_url: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_PUBLIC_BASE_URL", "http://localhost:8080")
    )

    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("CHATBRIDGE_REQUEST_TIMEOUT_SEC", "30"))
    )

    translation_cache_size: int = field(
        default_factory=lambda: int(os.getenv("CHATBRIDGE_TRANSLATION_CACHE_SIZE", "500"))
    )
    translation_cache_ttl_sec: float = field(
        default_factory=lambda: float(os.getenv("CHATBRIDGE_TRANSLATION_CACHE_TTL_SEC", "3600"))
    )

    history_limit: int = field(default_factory=lambda: int(os.getenv("CHATBRIDGE_HISTORY_LIMIT", "10")))

    # Language system messages are written in before translation to the worker locale.
    operating_language: str = field(default_factory=lambda: os.getenv("CHATBRIDGE_OPERATING_LANGUAGE", "ja"))
    default_manager_locale: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_DEFAULT_MANAGER_LOCALE", "ja")
    )
    default_worker_locale: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_DEFAULT_WORKER_LOCALE", "vi")
    )

    search_radii_m: tuple[int, ...] = field(
        default_factory=lambda: _int_tuple(os.getenv("CHATBRIDGE_SEARCH_RADII_M"), (3000, 5000, 10000))
    )
    max_facilities: int = field(default_factory=lambda: int(os.getenv("CHATBRIDGE_MAX_FACILITIES", "10")))

    serialize_conversations: bool = field(
        default_factory=lambda: _as_bool(os.getenv("CHATBRIDGE_SERIALIZE_CONVERSATIONS"), default=True)
    )

    # Persistence
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("CHATBRIDGE_LOCAL_STORAGE_DIR", ".chatbridge_local_store")
    )

    def api_key_for(self, capability: Capability) -> str | None:
        specific = {
            Capability.TRANSLATE: self.translate_api_key,
            Capability.SUGGEST: self.suggest_api_key,
            Capability.HEALTH_INTENT: self.suggest_api_key,
            Capability.HEALTH_CONSULTATION: self.suggest_api_key,
            Capability.IMAGE: self.suggest_api_key,
            Capability.SEGMENT: self.segment_api_key,
        }
        return specific.get(capability) or self.gemini_api_key

    def model_for(self, capability: Capability) -> str:
        return {
            Capability.TRANSLATE: self.translate_model,
            Capability.SUGGEST: self.suggest_model,
            Capability.HEALTH_INTENT: self.health_model,
            Capability.HEALTH_CONSULTATION: self.health_model,
            Capability.IMAGE: self.image_model,
            Capability.SEGMENT: self.segment_model,
        }[capability]


def get_settings() -> Settings:
    return Settings()
