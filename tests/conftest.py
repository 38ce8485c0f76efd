"""Shared fixtures: a scripted inference backend and a static metrics source."""

import asyncio

import pytest

from capsule_dispatch import (
    Dispatcher,
    DispatcherSettings,
    MetricsUnavailableError,
    ModelRegistry,
    ModelState,
    SystemUsage,
)


class FakeBackend:
    """Inference backend driven by the test.

    Each prompt blocks until `release(prompt)` is called, then returns
    "<model>:<prompt>". Prompts in `failures` raise immediately; prompts in
    `stubborn` ignore the first cancellation and keep waiting.
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, BaseException] = {}
        self.stubborn: set[str] = set()
        self.models: list[str] = []
        self.active = 0
        self.peak = 0
        self._gates: dict[str, asyncio.Event] = {}

    def gate(self, prompt: str) -> asyncio.Event:
        return self._gates.setdefault(prompt, asyncio.Event())

    def release(self, prompt: str) -> None:
        self.gate(prompt).set()

    async def invoke(self, model_id, prompt, token) -> str:
        self.calls.append((model_id, prompt))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if prompt in self.failures:
                raise self.failures[prompt]
            try:
                await self.gate(prompt).wait()
            except asyncio.CancelledError:
                if prompt not in self.stubborn:
                    raise
                await self.gate(prompt).wait()
            return f"{model_id}:{prompt}"
        finally:
            self.active -= 1

    async def list_models(self) -> list[str]:
        return list(self.models)


class StaticMetrics:
    """Metrics source returning queued readings.

    None entries raise MetricsUnavailableError; exception instances are raised
    as they are.
    """

    def __init__(self, *readings):
        self.readings = list(readings) or [(10.0, 20.0, 30.0)]
        self.calls = 0

    def sample_system_metrics(self) -> SystemUsage:
        reading = self.readings[min(self.calls, len(self.readings) - 1)]
        self.calls += 1
        if reading is None:
            raise MetricsUnavailableError("collector offline")
        if isinstance(reading, BaseException):
            raise reading
        cpu, memory, storage = reading
        return SystemUsage(
            cpu_percent=cpu, memory_percent=memory, storage_percent=storage
        )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def settings():
    return DispatcherSettings(
        queue_capacity=4,
        request_deadline_seconds=5.0,
        cancel_timeout_seconds=0.2,
    )


@pytest.fixture
def registry():
    """Registry with m1 loaded at max_concurrency=1."""
    registry = ModelRegistry()
    registry.register("m1", max_concurrency=1)
    registry.set_state("m1", ModelState.LOADED)
    return registry


@pytest.fixture
def dispatcher(registry, backend, settings):
    return Dispatcher(registry, backend, settings)


@pytest.fixture
def static_metrics():
    """Factory for StaticMetrics sources."""
    return StaticMetrics
