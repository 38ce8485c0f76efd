"""Inference backends — the opaque capability the dispatcher invokes.

A backend turns (model_id, prompt) into text. It should watch the
cancellation token where it can; the dispatcher additionally cancels the
asyncio task running `invoke`.
"""

import logging
from typing import Protocol

import httpx

from capsule_dispatch.errors import InferenceError
from capsule_dispatch.session import CancellationToken

logger = logging.getLogger(__name__)


class InferenceBackend(Protocol):
    async def invoke(
        self, model_id: str, prompt: str, token: CancellationToken
    ) -> str: ...

    async def list_models(self) -> list[str]: ...


class OllamaBackend:
    """Backend for an Ollama-compatible HTTP server.

    Uses the non-streaming `/api/generate` endpoint for generation and
    `/api/tags` for the model list.
    """

    def __init__(self, base_url: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def invoke(
        self, model_id: str, prompt: str, token: CancellationToken
    ) -> str:
        if token.cancelled:
            raise InferenceError(f"{model_id}: cancelled before dispatch")

        payload = {"model": model_id, "prompt": prompt, "stream": False}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/api/generate", json=payload
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Generation FAILED for {model_id}: {e}")
            raise InferenceError(f"{model_id}: {e}", cause=e) from e
        except ValueError as e:
            raise InferenceError(f"{model_id}: malformed response body", cause=e) from e

        text = data.get("response") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise InferenceError(f"{model_id}: response has no text")
        return text

    async def list_models(self) -> list[str]:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
            data = response.json()
        model_ids = [m["name"] for m in data.get("models", [])]
        logger.info(f"Backend {self.base_url} serves models: {model_ids}")
        return model_ids
