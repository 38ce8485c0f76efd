"""ModelRegistry — known models, their lifecycle state and slot accounting.

State changes are pushed synchronously to listeners so the dispatcher's next
admission check always sees fresh state. Slot acquisition and release are
plain synchronous calls, which makes them atomic on the event loop.
"""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from capsule_dispatch.config import Model, ModelState
from capsule_dispatch.errors import (
    DuplicateModelError,
    InvalidTransitionError,
    UnknownModelError,
)

if TYPE_CHECKING:
    from capsule_dispatch.backend import InferenceBackend

logger = logging.getLogger(__name__)

StateListener = Callable[[str, ModelState, ModelState], None]

_TRANSITIONS: dict[ModelState, set[ModelState]] = {
    ModelState.LOADING: {ModelState.LOADED, ModelState.ERROR},
    ModelState.LOADED: {ModelState.UNLOADING},
    ModelState.ERROR: {ModelState.LOADING},
    ModelState.UNLOADING: set(),
}


class ModelRegistry:
    """Tracks registered models in registration order.

    Readers get copies (`get`, `list`); only the registry and the dispatcher,
    through `acquire_slot`/`release_slot`, mutate the live records.
    """

    def __init__(self):
        self._models: dict[str, Model] = {}
        self._listeners: list[StateListener] = []

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def register(
        self,
        model_id: str,
        max_concurrency: int = 1,
        queue_capacity: Optional[int] = None,
    ) -> Model:
        """Add a model in the loading state."""
        if model_id in self._models:
            raise DuplicateModelError(model_id)
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        model = Model(
            id=model_id,
            max_concurrency=max_concurrency,
            queue_capacity=queue_capacity,
        )
        self._models[model_id] = model
        logger.info(
            f"Registered model {model_id} (max_concurrency={max_concurrency})"
        )
        return model.model_copy()

    def set_state(self, model_id: str, new_state: ModelState) -> None:
        model = self._live(model_id)
        old_state = model.state
        new_state = ModelState(new_state)
        if new_state not in _TRANSITIONS[old_state]:
            raise InvalidTransitionError(
                f"model {model_id}", old_state.value, new_state.value
            )
        model.state = new_state
        logger.info(f"Model {model_id}: {old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            listener(model_id, old_state, new_state)

    def unregister(self, model_id: str) -> None:
        """Remove an unloading model once its in-flight work has drained."""
        model = self._live(model_id)
        if model.state != ModelState.UNLOADING or model.in_flight > 0:
            raise InvalidTransitionError(
                f"model {model_id} (in_flight={model.in_flight})",
                model.state.value,
                "removed",
            )
        del self._models[model_id]
        logger.info(f"Removed model {model_id}")

    def get(self, model_id: str) -> Model:
        return self._live(model_id).model_copy()

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models

    def acquire_slot(self, model_id: str) -> bool:
        """Atomically take a concurrency slot on a loaded model.

        Returns False when the model is not loaded or all slots are taken.
        """
        model = self._live(model_id)
        if model.state != ModelState.LOADED or model.is_busy:
            return False
        model.in_flight += 1
        logger.info(
            f"Acquired slot on {model_id} "
            f"({model.in_flight}/{model.max_concurrency})"
        )
        return True

    def release_slot(self, model_id: str) -> None:
        """Release a slot. Models removed in the meantime are ignored."""
        model = self._models.get(model_id)
        if model is None:
            return
        model.in_flight = max(0, model.in_flight - 1)
        logger.info(
            f"Released slot on {model_id} "
            f"({model.in_flight}/{model.max_concurrency})"
        )

    def set_max_concurrency(self, model_id: str, max_concurrency: int) -> None:
        """Update the concurrency limit; clamped to at least one slot.

        Lowering the limit below the current in-flight count takes effect as
        requests finish; running requests are never interrupted.
        """
        model = self._live(model_id)
        model.max_concurrency = max(1, max_concurrency)
        logger.info(f"Model {model_id}: max_concurrency={model.max_concurrency}")
        for listener in list(self._listeners):
            listener(model_id, model.state, model.state)

    async def refresh_from_backend(
        self, backend: "InferenceBackend", max_concurrency: int = 1
    ) -> list[str]:
        """Register and load every model the backend serves that is not known yet.

        Returns the ids that were added. A failed listing is logged and leaves
        the registry as it was.
        """
        try:
            model_ids = await backend.list_models()
        except Exception as e:
            logger.error(f"Model list refresh FAILED: {e}")
            return []

        added = []
        for model_id in model_ids:
            if model_id in self._models:
                continue
            self.register(model_id, max_concurrency=max_concurrency)
            self.set_state(model_id, ModelState.LOADED)
            added.append(model_id)
        logger.info(f"Model list refresh: backend serves {model_ids}, added {added}")
        return added

    def _live(self, model_id: str) -> Model:
        try:
            return self._models[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    def list(self) -> list[Model]:
        return [model.model_copy() for model in self._models.values()]
