import os
import threading
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean value")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip()
    return raw or default


class CacheSettings(BaseModel):
    enabled: bool = Field(default=True)
    cache_roles: bool = Field(default=True)
    cache_permissions: bool = Field(default=True)
    expiration_time: int = Field(default=3600)
    key_prefix: str = Field(default="rolegate_permissions")
    store: Literal["memory", "redis"] = Field(default="memory")
    use_tags: bool = Field(default=True)
    # Scope of flush() when the backend cannot evict by tag.
    flush_fallback: Literal["store", "prefix"] = Field(default="store")


class GuardSettings(BaseModel):
    enabled: bool = Field(default=False)
    default: str = Field(default="web")


class ToggleSettings(BaseModel):
    enabled: bool = Field(default=False)


class SuperAdminSettings(BaseModel):
    enabled: bool = Field(default=False)
    role_slug: str = Field(default="super-admin")


class GateSettings(BaseModel):
    enabled: bool = Field(default=True)
    before_callback: bool = Field(default=True)


class PerformanceSettings(BaseModel):
    eager_loading: bool = Field(default=True)
    use_transactions: bool = Field(default=True)


class ResponseSettings(BaseModel):
    type: Literal["json", "redirect", "abort"] = Field(default="json")
    redirect_to: str = Field(default="/unauthorized")
    abort_code: int = Field(default=403)
    json_message: str = Field(default="Unauthorized access.")


class MiddlewareSettings(BaseModel):
    unauthorized_response: ResponseSettings = Field(default_factory=ResponseSettings)
    unauthenticated_response: ResponseSettings = Field(
        default_factory=lambda: ResponseSettings(
            type="redirect",
            redirect_to="/login",
            abort_code=401,
            json_message="Unauthenticated.",
        )
    )


class Settings(BaseModel):
    database_url: str = Field(default="sqlite+aiosqlite:///./rolegate.db")
    redis_url: str = Field(default="redis://localhost:6379/0")
    default_principal_type: str = Field(default="user")
    log_level: str = Field(default="INFO")
    debug: bool = Field(default=False)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    guards: GuardSettings = Field(default_factory=GuardSettings)
    wildcard_permissions: ToggleSettings = Field(default_factory=ToggleSettings)
    super_admin: SuperAdminSettings = Field(default_factory=SuperAdminSettings)
    expirable_permissions: ToggleSettings = Field(default_factory=ToggleSettings)
    expirable_roles: ToggleSettings = Field(default_factory=ToggleSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)
    middleware: MiddlewareSettings = Field(default_factory=MiddlewareSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = CacheSettings()

        expiration_time = _env_int("PERMISSION_CACHE_EXPIRATION", defaults.expiration_time)
        if expiration_time <= 0:
            raise ValueError("PERMISSION_CACHE_EXPIRATION must be greater than 0")

        store = _env_str("PERMISSION_CACHE_STORE", defaults.store).lower()
        # "default" is an alias for the in-process backend
        if store == "default":
            store = "memory"
        if store not in {"memory", "redis"}:
            raise ValueError("PERMISSION_CACHE_STORE must be 'memory' or 'redis'")

        flush_fallback = _env_str(
            "PERMISSION_CACHE_FLUSH_FALLBACK", defaults.flush_fallback
        ).lower()
        if flush_fallback not in {"store", "prefix"}:
            raise ValueError("PERMISSION_CACHE_FLUSH_FALLBACK must be 'store' or 'prefix'")

        database_url = _env_str(
            "PERMISSION_DATABASE_URL", cls.model_fields["database_url"].default
        )
        if "+" not in database_url.split("://", 1)[0]:
            raise ValueError(
                "PERMISSION_DATABASE_URL must name an async driver, "
                "e.g. 'postgresql+asyncpg://' or 'sqlite+aiosqlite://'"
            )

        cache = CacheSettings(
            enabled=_env_bool("PERMISSION_CACHE_ENABLED", defaults.enabled),
            cache_roles=_env_bool("PERMISSION_CACHE_ROLES", defaults.cache_roles),
            cache_permissions=_env_bool(
                "PERMISSION_CACHE_PERMISSIONS", defaults.cache_permissions
            ),
            expiration_time=expiration_time,
            key_prefix=_env_str("PERMISSION_CACHE_PREFIX", defaults.key_prefix),
            store=store,
            use_tags=_env_bool("PERMISSION_CACHE_USE_TAGS", defaults.use_tags),
            flush_fallback=flush_fallback,
        )

        return cls(
            database_url=database_url,
            redis_url=_env_str("REDIS_URL", cls.model_fields["redis_url"].default),
            default_principal_type=_env_str(
                "PERMISSION_DEFAULT_PRINCIPAL_TYPE",
                cls.model_fields["default_principal_type"].default,
            ),
            log_level=_env_str("LOG_LEVEL", cls.model_fields["log_level"].default).upper(),
            debug=_env_bool("DEBUG", False),
            cache=cache,
            guards=GuardSettings(
                enabled=_env_bool("PERMISSION_GUARDS_ENABLED", False),
                default=_env_str("PERMISSION_DEFAULT_GUARD", "web"),
            ),
            wildcard_permissions=ToggleSettings(
                enabled=_env_bool("PERMISSION_WILDCARD_ENABLED", False)
            ),
            super_admin=SuperAdminSettings(
                enabled=_env_bool("PERMISSION_SUPER_ADMIN_ENABLED", False),
                role_slug=_env_str("PERMISSION_SUPER_ADMIN_SLUG", "super-admin"),
            ),
            expirable_permissions=ToggleSettings(
                enabled=_env_bool("PERMISSION_EXPIRABLE_ENABLED", False)
            ),
            expirable_roles=ToggleSettings(
                enabled=_env_bool("PERMISSION_EXPIRABLE_ROLES_ENABLED", False)
            ),
            gate=GateSettings(
                enabled=_env_bool("PERMISSION_GATE_ENABLED", True),
            ),
            performance=PerformanceSettings(
                eager_loading=_env_bool("PERMISSION_EAGER_LOADING", True),
                use_transactions=_env_bool("PERMISSION_USE_TRANSACTIONS", True),
            ),
        )


# Deferred settings initialization to avoid import-time side effects.
# Components receive a Settings instance explicitly; this accessor is for
# application wiring only.
_settings_instance: Settings | None = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Get settings instance, creating it on first access.

    Uses double-checked locking so concurrent first calls build the
    instance exactly once.

    Raises:
        ValueError: If an environment variable holds an invalid value
    """
    global _settings_instance

    if _settings_instance is not None:
        return _settings_instance

    with _settings_lock:
        if _settings_instance is None:
            _settings_instance = Settings.from_env()

    return _settings_instance


def reset_settings() -> None:
    """Drop the cached instance so the next access re-reads the environment."""
    global _settings_instance
    with _settings_lock:
        _settings_instance = None


class _SettingsProxy:
    """Proxy to defer settings creation until first attribute access."""

    def __getattr__(self, name: str):
        return getattr(get_settings(), name)


settings = _SettingsProxy()  # type: ignore[assignment]
