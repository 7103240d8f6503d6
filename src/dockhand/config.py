"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Settings live in ``dockhand.toml``. Environment variables override it using
the ``DOCKHAND_`` prefix and ``__`` as the nested delimiter (e.g.
``DOCKHAND_LIFECYCLE__STOP_TIMEOUT=5``).

Priority (highest wins): init args > env vars > .env > dockhand.toml

The core modules never read settings themselves; :func:`get_settings` is
consumed by the client facade and the CLI, which turn sections into
``LifecycleConfig`` / ``RetryPolicy`` values and pass those in.

Usage::

    from dockhand.config import get_settings

    s = get_settings()
    print(s.executor.default_timeout)
"""

from __future__ import annotations

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from dockhand.lifecycle import LifecycleConfig
from dockhand.retry import Exponential, RetryPolicy

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in dockhand.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ExecutorConfig(_StrictModel):
    binary: str | None = None  # explicit CLI path; skips runtime detection
    runtime: str | None = None  # "docker" | "podman" | "colima" | ... | None = detect
    default_timeout: float | None = 30.0  # seconds; None = wait forever
    detect_platform: bool = True
    dry_run: bool = False
    kill_grace: float = 2.0  # seconds between SIGTERM and SIGKILL

    @field_validator("default_timeout", "kill_grace")
    @classmethod
    def non_negative(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v


class LifecycleSettings(_StrictModel):
    enable_shutdown_hook: bool = True
    stop_timeout: float = 10.0  # grace for `docker stop` during cleanup
    shutdown_stop_timeout: float = 3.0  # cap on that grace inside the exit hook
    cleanup_on_shutdown: bool = True
    handle_sigterm: bool = False

    def to_config(self) -> LifecycleConfig:
        return LifecycleConfig(**self.model_dump())


class RetrySettings(_StrictModel):
    max_attempts: int = 3
    initial_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 10.0

    @field_validator("max_attempts")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff=Exponential(
                initial=self.initial_delay,
                multiplier=self.multiplier,
                max=self.max_delay,
            ),
        )


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="dockhand.toml",
        env_file=".env",
        env_prefix="DOCKHAND_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    executor: ExecutorConfig = ExecutorConfig()
    lifecycle: LifecycleSettings = LifecycleSettings()
    retry: RetrySettings = RetrySettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > dockhand.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy singleton: loads settings on first access."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings
