"""Tests for RequestSession — state machine and result delivery."""

import pytest

from capsule_dispatch import (
    InferenceError,
    InvalidTransitionError,
    RequestCancelledError,
    RequestSession,
    RequestState,
    SessionClosedError,
)


@pytest.fixture
def session():
    return RequestSession(model_id="m1", prompt="hello")


class TestTransitions:
    def test_starts_queued_with_unique_id(self, session):
        other = RequestSession(model_id="m1", prompt="hello")
        assert session.state == RequestState.QUEUED
        assert session.request_id != other.request_id
        assert session.queue_seconds is None

    def test_run_to_completion(self, session):
        session.start()
        assert session.state == RequestState.RUNNING
        assert session.queue_seconds >= 0

        session.complete("done")
        assert session.state == RequestState.COMPLETED
        assert session.output == "done"
        assert session.run_seconds >= 0

    def test_queued_can_fail_or_cancel(self, session):
        session.fail(InferenceError("model gone"))
        assert session.state == RequestState.FAILED

        other = RequestSession(model_id="m1", prompt="hello")
        other.cancel()
        assert other.state == RequestState.CANCELLED

    def test_queued_cannot_complete(self, session):
        with pytest.raises(InvalidTransitionError):
            session.complete("too early")

    def test_running_cannot_restart(self, session):
        session.start()
        with pytest.raises(InvalidTransitionError):
            session.start()

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_sessions_are_closed(self, session, finish):
        session.start()
        if finish == "complete":
            session.complete("x")
        elif finish == "fail":
            session.fail(InferenceError("x"))
        else:
            session.cancel()

        with pytest.raises(SessionClosedError):
            session.start()
        with pytest.raises(SessionClosedError):
            session.cancel()
        with pytest.raises(SessionClosedError):
            session.complete("again")


class TestResult:
    @pytest.mark.asyncio
    async def test_result_returns_output(self, session):
        session.start()
        session.complete("text")
        assert await session.result() == "text"

    @pytest.mark.asyncio
    async def test_result_raises_failure(self, session):
        session.start()
        session.fail(InferenceError("boom"))
        with pytest.raises(InferenceError):
            await session.result()
        assert session.error_kind == "InferenceError"

    @pytest.mark.asyncio
    async def test_result_raises_on_cancel(self, session):
        session.cancel()
        with pytest.raises(RequestCancelledError):
            await session.result()
        assert session.error_kind is None
