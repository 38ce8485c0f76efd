"""Tests for CapsuleService — the transport-facing operations end to end."""

import asyncio

import pytest

from capsule_dispatch import (
    CapsuleService,
    DispatcherSettings,
    ModelState,
    RequestState,
    UnknownModelError,
    UnknownRequestError,
)


@pytest.fixture
def service(backend, static_metrics):
    service = CapsuleService.from_settings(
        DispatcherSettings(queue_capacity=4, history_size=2),
        backend=backend,
        metrics=static_metrics((50.0, 30.0, 20.0)),
    )
    service.registry.register("llama3", max_concurrency=1)
    service.registry.set_state("llama3", ModelState.LOADED)
    return service


class TestRequests:
    @pytest.mark.asyncio
    async def test_submit_and_poll_status(self, service, backend):
        first = service.submit_generation("llama3", "hello")
        second = service.submit_generation("llama3", "again")

        assert service.get_request_status(first).state == RequestState.RUNNING
        assert service.get_request_status(second).state == RequestState.QUEUED

        backend.release("hello")
        await service.get_session(first).wait()

        status = service.get_request_status(first)
        assert status.state == RequestState.COMPLETED
        assert status.result == "llama3:hello"
        assert status.error_kind is None

        await service.close()
        assert service.get_request_status(second).state == RequestState.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_request_reports_error_kind(self, service, backend):
        backend.failures["bad"] = RuntimeError("gpu fell off the bus")
        request_id = service.submit_generation("llama3", "bad")
        await service.get_session(request_id).wait()

        status = service.get_request_status(request_id)
        assert status.state == RequestState.FAILED
        assert status.error_kind == "InferenceError"
        assert "gpu fell off the bus" in status.error_message

    @pytest.mark.asyncio
    async def test_submit_errors_surface_to_caller(self, service):
        with pytest.raises(UnknownModelError):
            service.submit_generation("ghost", "hello")

    def test_unknown_request_id(self, service):
        with pytest.raises(UnknownRequestError):
            service.get_request_status("gen-missing")

    @pytest.mark.asyncio
    async def test_cancel_generation(self, service, backend):
        running = service.submit_generation("llama3", "a")
        queued = service.submit_generation("llama3", "b")

        assert await service.cancel_generation(queued)
        assert service.get_request_status(queued).state == RequestState.CANCELLED
        assert not await service.cancel_generation(queued)

        backend.release("a")
        await service.get_session(running).wait()

    @pytest.mark.asyncio
    async def test_history_evicts_oldest_finished(self, service, backend):
        ids = []
        for prompt in ["p0", "p1", "p2"]:
            backend.release(prompt)
            request_id = service.submit_generation("llama3", prompt)
            await service.get_session(request_id).wait()
            ids.append(request_id)

        with pytest.raises(UnknownRequestError):
            service.get_request_status(ids[0])
        assert service.get_request_status(ids[2]).state == RequestState.COMPLETED


class TestModelsAndResources:
    def test_list_models(self, service):
        service.registry.register("mistral")
        models = service.list_models()
        assert [(m.id, m.state) for m in models] == [
            ("llama3", ModelState.LOADED),
            ("mistral", ModelState.LOADING),
        ]

    @pytest.mark.asyncio
    async def test_resource_snapshot(self, service):
        service.submit_generation("llama3", "a")
        service.submit_generation("llama3", "b")

        snapshot = service.get_resource_snapshot()

        assert snapshot.cpu_percent == 50.0
        assert snapshot.per_model_queue_depth == {"llama3": 1}
        assert snapshot.per_model_in_flight == {"llama3": 1}
        await service.close()

    @pytest.mark.asyncio
    async def test_start_discovers_backend_models(self, service, backend):
        backend.models = ["llama3", "phi3"]

        await service.start(discover_models=True)
        try:
            assert [m.id for m in service.list_models()] == ["llama3", "phi3"]
            assert service.registry.get("phi3").state == ModelState.LOADED
            for _ in range(100):
                if service.monitor.latest is not None:
                    break
                await asyncio.sleep(0.01)
            assert service.monitor.latest.per_model_queue_depth == {
                "llama3": 0,
                "phi3": 0,
            }
        finally:
            await service.close()
