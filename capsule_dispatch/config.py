"""Model and DispatcherSettings — per-model state and process-wide configuration."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelState(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"
    UNLOADING = "unloading"


class Model(BaseModel):
    """A registered model and its concurrency accounting.

    `in_flight` counts requests currently running against the model and never
    exceeds `max_concurrency`. `queue_capacity` overrides the dispatcher-wide
    default when set.
    """

    id: str
    state: ModelState = ModelState.LOADING
    max_concurrency: int = Field(default=1, ge=1)
    in_flight: int = Field(default=0, ge=0)
    queue_capacity: Optional[int] = Field(default=None, ge=1)

    @property
    def is_busy(self) -> bool:
        """Busy when all slots are in use."""
        return self.in_flight >= self.max_concurrency

    @property
    def accepts_requests(self) -> bool:
        """Loaded models run requests; loading models may queue them."""
        return self.state in (ModelState.LOADED, ModelState.LOADING)


class DispatcherSettings(BaseSettings):
    """Dispatcher configuration, read from CAPSULE_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="CAPSULE_", case_sensitive=False)

    default_max_concurrency: int = Field(default=1, ge=1)
    queue_capacity: int = Field(default=16, ge=1)
    request_deadline_seconds: float = Field(default=120.0, gt=0)
    cancel_timeout_seconds: float = Field(default=5.0, gt=0)

    monitor_interval_seconds: float = Field(default=2.0, gt=0)
    storage_path: str = "/"

    backend_url: str = "http://localhost:11434"
    backend_timeout_seconds: float = Field(default=60.0, gt=0)

    history_size: int = Field(default=1024, ge=1)


@lru_cache
def get_settings() -> DispatcherSettings:
    return DispatcherSettings()
