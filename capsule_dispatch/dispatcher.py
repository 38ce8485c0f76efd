"""Dispatcher — per-model admission control for generation requests.

Each model gets a bounded FIFO queue. A request is admitted (moved to
running) when its model is loaded and has a free concurrency slot; the
inference call then runs as its own asyncio task. Every queue and slot
mutation happens in synchronous code on the event loop, so admission
decisions for a model are serialized without locks.
"""

import asyncio
import collections
import logging
from dataclasses import dataclass, field
from typing import Optional

from capsule_dispatch.backend import InferenceBackend
from capsule_dispatch.config import DispatcherSettings, ModelState
from capsule_dispatch.errors import (
    GenerationTimeoutError,
    InferenceError,
    InvalidPromptError,
    ModelUnavailableError,
    QueueFullError,
)
from capsule_dispatch.registry import ModelRegistry
from capsule_dispatch.session import CancellationToken, RequestSession, RequestState

logger = logging.getLogger(__name__)


@dataclass
class RunningRequest:
    """Bookkeeping for an admitted request while its inference call is live."""

    session: RequestSession
    token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None
    deadline_handle: Optional[asyncio.TimerHandle] = None
    stopper: Optional[asyncio.Task] = None
    timed_out: bool = False
    finalized: bool = False

    @property
    def stop_requested(self) -> bool:
        return self.timed_out or self.session.cancel_requested


class Dispatcher:
    """Routes generation requests to models with bounded concurrency.

    `submit` never blocks: it queues the request or raises. Completion,
    failure and cancellation each release the model's slot and re-run
    admission so the oldest queued request takes it.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        backend: InferenceBackend,
        settings: Optional[DispatcherSettings] = None,
    ):
        self.registry = registry
        self.backend = backend
        self.settings = settings or DispatcherSettings()
        self._queues: dict[str, collections.deque[RequestSession]] = {}
        self._live: dict[str, RequestSession] = {}
        self._running: dict[str, RunningRequest] = {}
        self._closed = False
        registry.add_listener(self._on_model_changed)

    def submit(self, model_id: str, prompt: str) -> RequestSession:
        """Queue a generation request and admit it if a slot is free.

        Must be called from the event loop that runs the inference tasks.
        Raises UnknownModelError, InvalidPromptError, ModelUnavailableError
        or QueueFullError without creating a request.
        """
        logger.info(f"Dispatcher.submit: model={model_id}")
        asyncio.get_running_loop()

        model = self.registry.get(model_id)
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidPromptError("prompt must be a non-empty string")
        if self._closed:
            raise ModelUnavailableError(model_id, "dispatcher closed")
        if not model.accepts_requests:
            logger.warning(f"Rejected request for {model_id}: state={model.state.value}")
            raise ModelUnavailableError(model_id, model.state.value)

        queue = self._queues.setdefault(model_id, collections.deque())
        capacity = model.queue_capacity or self.settings.queue_capacity
        if len(queue) >= capacity:
            logger.warning(f"Rejected request for {model_id}: queue full ({capacity})")
            raise QueueFullError(model_id, capacity)

        session = RequestSession(model_id=model_id, prompt=prompt)
        queue.append(session)
        self._live[session.request_id] = session
        self._admit(model_id)
        return session

    async def cancel(self, request_id: str) -> bool:
        """Cancel a queued or running request.

        Queued requests are cancelled immediately. Running requests are
        signalled and awaited up to `cancel_timeout_seconds`, after which the
        request is force-cancelled. Returns False for unknown or finished ids.
        """
        session = self._live.get(request_id)
        if session is None:
            return False

        session.cancel_requested = True
        if session.state == RequestState.QUEUED:
            self._queues[session.model_id].remove(session)
            self._drop_queue_if_empty(session.model_id)
            self._live.pop(request_id, None)
            session.cancel()
            logger.info(f"Cancelled queued request {request_id}")
            return True

        running = self._running.get(request_id)
        if running is None:
            return False
        await self._stop(running)
        return True

    def get_session(self, request_id: str) -> Optional[RequestSession]:
        """Live (not yet terminal) session for an id, if any."""
        return self._live.get(request_id)

    def queue_depths(self) -> dict[str, int]:
        return {
            model.id: len(self._queues.get(model.id, ()))
            for model in self.registry.list()
        }

    def in_flight_counts(self) -> dict[str, int]:
        return {model.id: model.in_flight for model in self.registry.list()}

    async def close(self) -> None:
        """Cancel every queued and running request and refuse new ones."""
        self._closed = True
        for queue in self._queues.values():
            while queue:
                session = queue.popleft()
                session.cancel_requested = True
                self._live.pop(session.request_id, None)
                session.cancel()
        self._queues.clear()

        running = list(self._running.values())
        for entry in running:
            entry.session.cancel_requested = True
        await asyncio.gather(*(self._stop(entry) for entry in running))
        logger.info(f"Dispatcher closed ({len(running)} running requests stopped)")

    def _admit(self, model_id: str) -> None:
        """Move queued requests to running while the model has free slots."""
        queue = self._queues.get(model_id)
        if not queue or model_id not in self.registry:
            return
        model = self.registry.get(model_id)
        if model.state != ModelState.LOADED or model.is_busy:
            return

        loop = asyncio.get_running_loop()
        while queue and self.registry.acquire_slot(model_id):
            session = queue.popleft()
            session.start()
            running = RunningRequest(session=session)
            self._running[session.request_id] = running
            running.task = loop.create_task(
                self._run(running), name=f"generate-{session.request_id}"
            )
            running.deadline_handle = loop.call_later(
                self.settings.request_deadline_seconds, self._on_deadline, running
            )
            logger.info(
                f"Admitted request {session.request_id} for {model_id} "
                f"(queued {session.queue_seconds:.3f}s)"
            )
        self._drop_queue_if_empty(model_id)

    async def _run(self, running: RunningRequest) -> None:
        session = running.session
        try:
            output = await self.backend.invoke(
                session.model_id, session.prompt, running.token
            )
        except asyncio.CancelledError:
            external = not running.stop_requested
            self._finish_stopped(running)
            if external:
                raise
        except Exception as e:
            if running.stop_requested:
                self._finish_stopped(running)
            elif isinstance(e, InferenceError):
                self._finish(running, error=e)
            else:
                logger.error(
                    f"Backend raised {type(e).__name__} for request "
                    f"{session.request_id}",
                    exc_info=True,
                )
                self._finish(
                    running,
                    error=InferenceError(f"{session.model_id}: {e}", cause=e),
                )
        else:
            if running.stop_requested:
                self._finish_stopped(running)
            else:
                self._finish(running, output=output)

    def _on_deadline(self, running: RunningRequest) -> None:
        if running.finalized or running.session.cancel_requested:
            return
        running.timed_out = True
        logger.warning(
            f"Request {running.session.request_id} exceeded deadline "
            f"of {self.settings.request_deadline_seconds}s"
        )
        running.stopper = asyncio.get_running_loop().create_task(self._stop(running))

    async def _stop(self, running: RunningRequest) -> None:
        """Signal a running request to stop and wait, bounded, for it to do so."""
        running.token.cancel()
        running.task.cancel()
        done, _ = await asyncio.wait(
            {running.task}, timeout=self.settings.cancel_timeout_seconds
        )
        if running.finalized:
            return
        if not done:
            logger.error(
                f"Inconsistency: backend did not stop request "
                f"{running.session.request_id} within "
                f"{self.settings.cancel_timeout_seconds}s; force-finalizing"
            )
        self._finish_stopped(running)

    def _finish_stopped(self, running: RunningRequest) -> None:
        if running.timed_out:
            self._finish(
                running,
                error=GenerationTimeoutError(
                    running.session.request_id,
                    self.settings.request_deadline_seconds,
                ),
            )
        else:
            self._finish(running, cancelled=True)

    def _finish(
        self,
        running: RunningRequest,
        output: Optional[str] = None,
        error: Optional[BaseException] = None,
        cancelled: bool = False,
    ) -> None:
        session = running.session
        if running.finalized:
            logger.warning(
                f"Request {session.request_id} stopped after it was "
                f"force-finalized; outcome discarded"
            )
            return
        running.finalized = True
        if running.deadline_handle is not None:
            running.deadline_handle.cancel()
        self._running.pop(session.request_id, None)
        self._live.pop(session.request_id, None)

        if cancelled:
            session.cancel()
        elif error is not None:
            session.fail(error)
        else:
            session.complete(output)
        self.registry.release_slot(session.model_id)
        logger.info(
            f"Request {session.request_id} {session.state.value}"
            + (f" ({session.error_kind}: {error})" if error is not None else "")
        )
        self._admit(session.model_id)

    def _on_model_changed(
        self, model_id: str, old_state: ModelState, new_state: ModelState
    ) -> None:
        if new_state in (ModelState.ERROR, ModelState.UNLOADING):
            self._drain(model_id, new_state)
        elif new_state == ModelState.LOADED:
            self._admit(model_id)

    def _drain(self, model_id: str, state: ModelState) -> None:
        """Fail every queued request for a model that can no longer serve them."""
        queue = self._queues.pop(model_id, None)
        if not queue:
            return
        logger.warning(
            f"Draining {len(queue)} queued requests for {model_id} "
            f"(state={state.value})"
        )
        while queue:
            session = queue.popleft()
            self._live.pop(session.request_id, None)
            session.fail(ModelUnavailableError(model_id, state.value))

    def _drop_queue_if_empty(self, model_id: str) -> None:
        if model_id in self._queues and not self._queues[model_id]:
            del self._queues[model_id]
