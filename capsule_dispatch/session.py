"""RequestSession — the lifecycle of a single generation request.

    queued -> running -> completed | failed | cancelled
    queued -> cancelled | failed

Terminal sessions are frozen: any further mutation raises SessionClosedError.
"""

import asyncio
import time
import uuid
from enum import Enum
from typing import Optional

from capsule_dispatch.errors import (
    InvalidTransitionError,
    RequestCancelledError,
    SessionClosedError,
)


class RequestState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RequestState.COMPLETED,
            RequestState.FAILED,
            RequestState.CANCELLED,
        )


_TRANSITIONS: dict[RequestState, set[RequestState]] = {
    RequestState.QUEUED: {
        RequestState.RUNNING,
        RequestState.CANCELLED,
        RequestState.FAILED,
    },
    RequestState.RUNNING: {
        RequestState.COMPLETED,
        RequestState.FAILED,
        RequestState.CANCELLED,
    },
}


class CancellationToken:
    """Cooperative cancellation flag handed to the inference backend."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class RequestSession:
    """One generation request, from submission to its terminal state.

    The dispatcher drives the transitions; callers read `state`, `output`
    and `error`, or await `result()`.
    """

    def __init__(self, model_id: str, prompt: str, request_id: Optional[str] = None):
        self.request_id = request_id or f"gen-{uuid.uuid4().hex}"
        self.model_id = model_id
        self.prompt = prompt
        self.state = RequestState.QUEUED
        self.output: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.cancel_requested = False

        self.submitted_at = time.time()
        self._submitted_mono = time.monotonic()
        self._started_mono: Optional[float] = None
        self._finished_mono: Optional[float] = None
        self._finished = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f"RequestSession(id={self.request_id}, model={self.model_id}, "
            f"state={self.state.value})"
        )

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @property
    def queue_seconds(self) -> Optional[float]:
        if self._started_mono is None:
            return None
        return self._started_mono - self._submitted_mono

    @property
    def run_seconds(self) -> Optional[float]:
        if self._started_mono is None or self._finished_mono is None:
            return None
        return self._finished_mono - self._started_mono

    def start(self) -> None:
        self._transition(RequestState.RUNNING)
        self._started_mono = time.monotonic()

    def complete(self, output: str) -> None:
        self._transition(RequestState.COMPLETED)
        self.output = output
        self._finish()

    def fail(self, error: BaseException) -> None:
        self._transition(RequestState.FAILED)
        self.error = error
        self._finish()

    def cancel(self) -> None:
        self._transition(RequestState.CANCELLED)
        self._finish()

    async def wait(self) -> "RequestSession":
        """Wait until the session reaches a terminal state."""
        await self._finished.wait()
        return self

    async def result(self) -> str:
        """Wait for the generated text; raises the failure or cancellation."""
        await self._finished.wait()
        if self.state == RequestState.FAILED:
            raise self.error
        if self.state == RequestState.CANCELLED:
            raise RequestCancelledError(self.request_id)
        return self.output

    def _transition(self, new_state: RequestState) -> None:
        if self.state.is_terminal:
            raise SessionClosedError(self.request_id, self.state.value)
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"request {self.request_id}", self.state.value, new_state.value
            )
        self.state = new_state

    def _finish(self) -> None:
        self._finished_mono = time.monotonic()
        self._finished.set()
