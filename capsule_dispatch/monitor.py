"""ResourceMonitor — periodic utilization snapshots.

System figures come from a metrics source (psutil by default) and are read
in a worker thread; per-model queue depth and in-flight counts are read from
the dispatcher on the event loop. Readers always get the cached latest
snapshot.
"""

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Mapping, Optional, Protocol

import psutil
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)

from capsule_dispatch.dispatcher import Dispatcher
from capsule_dispatch.errors import MetricsUnavailableError

logger = logging.getLogger(__name__)


class SystemUsage(BaseModel):
    """CPU, memory and storage utilization in percent."""

    cpu_percent: float = Field(ge=0.0, le=100.0)
    memory_percent: float = Field(ge=0.0, le=100.0)
    storage_percent: float = Field(ge=0.0, le=100.0)


class ResourceSnapshot(SystemUsage):
    """Utilization plus per-model queue depth and in-flight counts.

    Snapshots are shared between readers, so the per-model mappings are
    read-only views.
    """

    model_config = ConfigDict(frozen=True)

    per_model_queue_depth: Mapping[str, int] = {}
    per_model_in_flight: Mapping[str, int] = {}
    sampled_at: float
    stale: bool = False

    @field_validator("per_model_queue_depth", "per_model_in_flight")
    @classmethod
    def _read_only(cls, value: Mapping[str, int]) -> Mapping[str, int]:
        return MappingProxyType(dict(value))

    @field_serializer("per_model_queue_depth", "per_model_in_flight")
    def _as_dict(self, value: Mapping[str, int]) -> dict[str, int]:
        return dict(value)


class MetricsSource(Protocol):
    def sample_system_metrics(self) -> SystemUsage: ...


class PsutilMetrics:
    """Reads host utilization through psutil.

    `storage_path` selects the filesystem whose usage is reported.
    """

    def __init__(self, storage_path: str = "/"):
        self.storage_path = storage_path
        # The first non-blocking reading is always 0.0; take it here.
        psutil.cpu_percent(interval=None)

    def sample_system_metrics(self) -> SystemUsage:
        try:
            return SystemUsage(
                cpu_percent=psutil.cpu_percent(interval=None),
                memory_percent=psutil.virtual_memory().percent,
                storage_percent=psutil.disk_usage(self.storage_path).percent,
            )
        except (psutil.Error, OSError, ValidationError) as e:
            raise MetricsUnavailableError(f"system metrics unavailable: {e}") from e


class ResourceMonitor:
    """Samples utilization on a fixed interval and caches the latest snapshot.

    A failing metrics source never stops the loop: the previous figures are
    republished with `stale=True` until readings come back.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        metrics: MetricsSource,
        interval: float = 2.0,
    ):
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.interval = interval
        self._latest: Optional[ResourceSnapshot] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def latest(self) -> Optional[ResourceSnapshot]:
        return self._latest

    def sample(self) -> ResourceSnapshot:
        """Take a snapshot now, calling the metrics source synchronously."""
        try:
            usage = self.metrics.sample_system_metrics()
        except MetricsUnavailableError as e:
            return self._publish(None, error=e)
        return self._publish(usage)

    def snapshot(self) -> ResourceSnapshot:
        """The cached latest snapshot; samples once if there is none yet."""
        if self._latest is None:
            return self.sample()
        return self._latest

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="resource-monitor")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._sample_in_thread()
            except Exception as e:
                logger.error(f"Resource monitor sample crashed: {e}", exc_info=True)
                if self._latest is not None:
                    self._latest = self._latest.model_copy(update={"stale": True})

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def _sample_in_thread(self) -> None:
        try:
            usage = await asyncio.to_thread(self.metrics.sample_system_metrics)
        except MetricsUnavailableError as e:
            self._publish(None, error=e)
        except Exception as e:
            logger.error(
                f"Metrics source raised {type(e).__name__}: {e}", exc_info=True
            )
            self._publish(None, error=e)
        else:
            self._publish(usage)

    def _publish(
        self,
        usage: Optional[SystemUsage],
        error: Optional[Exception] = None,
    ) -> ResourceSnapshot:
        stale = usage is None
        if stale:
            logger.warning(f"Metrics unavailable, reusing previous values: {error}")
            previous = self._latest
            usage = SystemUsage(
                cpu_percent=previous.cpu_percent if previous else 0.0,
                memory_percent=previous.memory_percent if previous else 0.0,
                storage_percent=previous.storage_percent if previous else 0.0,
            )

        snapshot = ResourceSnapshot(
            cpu_percent=usage.cpu_percent,
            memory_percent=usage.memory_percent,
            storage_percent=usage.storage_percent,
            per_model_queue_depth=self.dispatcher.queue_depths(),
            per_model_in_flight=self.dispatcher.in_flight_counts(),
            sampled_at=time.time(),
            stale=stale,
        )
        self._latest = snapshot
        return snapshot
