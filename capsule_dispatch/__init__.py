"""capsule-dispatch — per-model admission control for model-serving backends.

Public API:
    ModelRegistry      — registered models, lifecycle state and slot accounting
    Dispatcher         — bounded-concurrency, FIFO-queued request dispatch
    RequestSession     — one generation request and its state machine
    ResourceMonitor    — periodic utilization and queue-depth snapshots
    CapsuleService     — transport-agnostic facade wiring the above together
    OllamaBackend      — httpx client for an Ollama-compatible server
    DispatcherSettings — pydantic-settings configuration (CAPSULE_* env vars)
"""

from capsule_dispatch.backend import InferenceBackend, OllamaBackend
from capsule_dispatch.config import DispatcherSettings, Model, ModelState, get_settings
from capsule_dispatch.dispatcher import Dispatcher
from capsule_dispatch.errors import (
    DispatchError,
    DuplicateModelError,
    GenerationTimeoutError,
    InferenceError,
    InvalidPromptError,
    InvalidTransitionError,
    MetricsUnavailableError,
    ModelUnavailableError,
    QueueFullError,
    RequestCancelledError,
    SessionClosedError,
    UnknownModelError,
    UnknownRequestError,
)
from capsule_dispatch.monitor import (
    PsutilMetrics,
    ResourceMonitor,
    ResourceSnapshot,
    SystemUsage,
)
from capsule_dispatch.registry import ModelRegistry
from capsule_dispatch.service import CapsuleService, RequestStatus
from capsule_dispatch.session import CancellationToken, RequestSession, RequestState

__all__ = [
    "CancellationToken",
    "CapsuleService",
    "Dispatcher",
    "DispatcherSettings",
    "DispatchError",
    "DuplicateModelError",
    "GenerationTimeoutError",
    "InferenceBackend",
    "InferenceError",
    "InvalidPromptError",
    "InvalidTransitionError",
    "MetricsUnavailableError",
    "Model",
    "ModelRegistry",
    "ModelState",
    "ModelUnavailableError",
    "OllamaBackend",
    "PsutilMetrics",
    "QueueFullError",
    "RequestCancelledError",
    "RequestSession",
    "RequestState",
    "RequestStatus",
    "ResourceMonitor",
    "ResourceSnapshot",
    "SessionClosedError",
    "SystemUsage",
    "UnknownModelError",
    "UnknownRequestError",
    "get_settings",
]
