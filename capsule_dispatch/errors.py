"""Error taxonomy for the dispatcher, registry and resource monitor.

Registry errors (unknown/duplicate model, invalid transition) are raised
synchronously to the caller. Request-scoped errors either reject a submit
outright or end up attached to a failed RequestSession.
"""


class DispatchError(Exception):
    """Base class for every error raised by capsule_dispatch."""


class UnknownModelError(DispatchError, KeyError):
    def __init__(self, model_id: str):
        super().__init__(model_id)
        self.model_id = model_id

    def __str__(self) -> str:
        return f"unknown model: {self.model_id}"


class DuplicateModelError(DispatchError):
    def __init__(self, model_id: str):
        super().__init__(f"model already registered: {model_id}")
        self.model_id = model_id


class InvalidTransitionError(DispatchError):
    def __init__(self, subject: str, old: str, new: str):
        super().__init__(f"{subject}: invalid transition {old} -> {new}")
        self.subject = subject
        self.old = old
        self.new = new


class ModelUnavailableError(DispatchError):
    def __init__(self, model_id: str, state: str):
        super().__init__(f"model {model_id} is unavailable (state={state})")
        self.model_id = model_id
        self.state = state


class QueueFullError(DispatchError):
    def __init__(self, model_id: str, capacity: int):
        super().__init__(f"queue for model {model_id} is full ({capacity})")
        self.model_id = model_id
        self.capacity = capacity


class InvalidPromptError(DispatchError, ValueError):
    pass


class SessionClosedError(DispatchError):
    def __init__(self, request_id: str, state: str):
        super().__init__(f"request {request_id} is already {state}")
        self.request_id = request_id
        self.state = state


class GenerationTimeoutError(DispatchError, TimeoutError):
    """A running request exceeded its deadline."""

    def __init__(self, request_id: str, deadline: float):
        super().__init__(f"request {request_id} exceeded deadline of {deadline}s")
        self.request_id = request_id
        self.deadline = deadline


class InferenceError(DispatchError):
    """The inference backend failed. `cause` holds the backend exception, if any."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class MetricsUnavailableError(DispatchError):
    pass


class RequestCancelledError(DispatchError):
    def __init__(self, request_id: str):
        super().__init__(f"request {request_id} was cancelled")
        self.request_id = request_id


class UnknownRequestError(DispatchError, KeyError):
    def __init__(self, request_id: str):
        super().__init__(request_id)
        self.request_id = request_id

    def __str__(self) -> str:
        return f"unknown request: {self.request_id}"
