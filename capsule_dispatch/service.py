"""CapsuleService — transport-agnostic entry point.

Wires one ModelRegistry, Dispatcher and ResourceMonitor together and exposes
the operations a transport layer (HTTP, CLI, ...) would call. Request status
is kept for a bounded number of recent requests.
"""

import collections
import logging
from typing import Optional

from pydantic import BaseModel

from capsule_dispatch.backend import InferenceBackend, OllamaBackend
from capsule_dispatch.config import DispatcherSettings, Model
from capsule_dispatch.dispatcher import Dispatcher
from capsule_dispatch.errors import UnknownRequestError
from capsule_dispatch.monitor import (
    MetricsSource,
    PsutilMetrics,
    ResourceMonitor,
    ResourceSnapshot,
)
from capsule_dispatch.registry import ModelRegistry
from capsule_dispatch.session import RequestSession, RequestState

logger = logging.getLogger(__name__)


class RequestStatus(BaseModel):
    """Point-in-time view of a request for transport layers.

    `error_kind` names the error class of a failed request.
    """

    request_id: str
    model_id: str
    state: RequestState
    result: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class CapsuleService:
    """Submit, poll and cancel generations, and read models and resources.

    Owns no state of its own beyond a bounded map of recently issued
    requests; everything else is delegated to the injected components.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        dispatcher: Dispatcher,
        monitor: ResourceMonitor,
        history_size: int = 1024,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.history_size = history_size
        self._sessions: collections.OrderedDict[str, RequestSession] = (
            collections.OrderedDict()
        )

    @classmethod
    def from_settings(
        cls,
        settings: DispatcherSettings,
        backend: Optional[InferenceBackend] = None,
        metrics: Optional[MetricsSource] = None,
    ) -> "CapsuleService":
        """Build the registry, dispatcher and monitor once and inject them."""
        registry = ModelRegistry()
        backend = backend or OllamaBackend(
            settings.backend_url, timeout=settings.backend_timeout_seconds
        )
        dispatcher = Dispatcher(registry, backend, settings)
        monitor = ResourceMonitor(
            dispatcher,
            metrics or PsutilMetrics(settings.storage_path),
            interval=settings.monitor_interval_seconds,
        )
        return cls(registry, dispatcher, monitor, history_size=settings.history_size)

    async def start(self, discover_models: bool = False) -> None:
        if discover_models:
            await self.registry.refresh_from_backend(
                self.dispatcher.backend,
                max_concurrency=self.dispatcher.settings.default_max_concurrency,
            )
        await self.monitor.start()

    async def close(self) -> None:
        await self.monitor.stop()
        await self.dispatcher.close()

    def submit_generation(self, model_id: str, prompt: str) -> str:
        session = self.dispatcher.submit(model_id, prompt)
        self._remember(session)
        return session.request_id

    def get_session(self, request_id: str) -> RequestSession:
        try:
            return self._sessions[request_id]
        except KeyError:
            raise UnknownRequestError(request_id) from None

    def get_request_status(self, request_id: str) -> RequestStatus:
        session = self.get_session(request_id)
        return RequestStatus(
            request_id=session.request_id,
            model_id=session.model_id,
            state=session.state,
            result=session.output,
            error_kind=session.error_kind,
            error_message=str(session.error) if session.error is not None else None,
        )

    async def cancel_generation(self, request_id: str) -> bool:
        return await self.dispatcher.cancel(request_id)

    def list_models(self) -> list[Model]:
        return self.registry.list()

    def get_resource_snapshot(self) -> ResourceSnapshot:
        return self.monitor.snapshot()

    def _remember(self, session: RequestSession) -> None:
        self._sessions[session.request_id] = session
        # Evict the oldest finished requests; live ones are never dropped.
        excess = len(self._sessions) - self.history_size
        if excess <= 0:
            return
        for request_id in list(self._sessions):
            if excess <= 0:
                break
            if self._sessions[request_id].done:
                del self._sessions[request_id]
                excess -= 1
