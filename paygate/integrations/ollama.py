"""
Ollama compute backend (OpenAI-compatible chat completions endpoint).

Jobs run on poll worker threads, so ``execute`` is synchronous and drives the
aiohttp request on a private event loop per call.
"""
import asyncio
from typing import Any, Dict, Mapping, Optional

import aiohttp

from paygate.config import EXECUTOR_SETTINGS, PRICING
from paygate.integrations.base import ExecutionError
from paygate.utils import get_logger

logger = get_logger(__name__)

# Generation params forwarded to the backend when present in the job payload
FORWARDED_PARAMS = ("max_tokens", "temperature", "top_k", "top_p", "frequency_penalty", "seed")


class OllamaExecutor:
    """Runs text generation jobs against a local Ollama server."""

    def __init__(self, base_url: Optional[str] = None, *, timeout_seconds: Optional[float] = None, default_model: Optional[str] = None):
        self.base_url = (base_url or str(EXECUTOR_SETTINGS["ollama_base_url"])).rstrip("/")
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else EXECUTOR_SETTINGS["request_timeout_seconds"])
        self.default_model = default_model or str(PRICING["default_model"])
        self.logger = get_logger("integration.ollama")

    def build_request(self, request_payload: Mapping[str, Any]) -> Dict[str, Any]:
        prompt = request_payload.get("prompt")
        if not prompt:
            raise ExecutionError("No 'text' input found for text generation job.")
        params = request_payload.get("params") or {}
        body: Dict[str, Any] = {
            "model": request_payload.get("model") or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }
        for name in FORWARDED_PARAMS:
            if name in params:
                body[name] = params[name]
        return body

    async def _generate(self, body: Dict[str, Any]) -> str:
        url = f"{self.base_url}/v1/chat/completions"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json=body) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ExecutionError(
                        f"Ollama returned HTTP {response.status}",
                        context={"body": text[:256], "model": body.get("model")},
                    )
                data = await response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ExecutionError("Ollama response contained no choices", context={"model": body.get("model")})
        return (choices[0].get("message") or {}).get("content") or ""

    def execute(self, request_payload: Mapping[str, Any]) -> str:
        body = self.build_request(request_payload)
        self.logger.info("Running Ollama inference", model=body["model"])
        try:
            return asyncio.run(self._generate(body))
        except ExecutionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExecutionError("Ollama inference failed", cause=e, context={"model": body["model"]}) from e


class EchoExecutor:
    """Deterministic mock backend: returns a transformed copy of the prompt."""

    def __init__(self, prefix: str = "echo: "):
        self.prefix = prefix

    def execute(self, request_payload: Mapping[str, Any]) -> str:
        prompt = request_payload.get("prompt")
        if not prompt:
            raise ExecutionError("No 'text' input found for text generation job.")
        return f"{self.prefix}{prompt}"


def create_executor():
    """Executor selected by ``EXECUTOR_SETTINGS['backend']``."""
    backend = str(EXECUTOR_SETTINGS.get("backend", "mock")).lower()
    if backend == "ollama":
        logger.info("Using Ollama executor", base_url=EXECUTOR_SETTINGS["ollama_base_url"])
        return OllamaExecutor()
    logger.info("Using mock echo executor")
    return EchoExecutor()


__all__ = ["OllamaExecutor", "EchoExecutor", "create_executor", "FORWARDED_PARAMS"]
