"""Client for the local model runtime (Ollama-compatible /api/generate)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from clinigate.config import Settings
from clinigate.errors import (
    GatewayError,
    ModelTimeoutError,
    ProviderUnavailableError,
    ValidationFailureError,
    is_transient,
)
from clinigate.utils import elapsed_ms, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderEndpoint:
    name: str
    base_url: str
    model: str


@dataclass(frozen=True)
class Generation:
    text: str
    model: str
    provider: str
    latency_ms: int
    eval_count: int | None = None


@dataclass(frozen=True)
class StreamFragment:
    text: str
    done: bool
    model: str
    provider: str
    eval_count: int | None = None


def as_gateway_error(exc: BaseException) -> BaseException:
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ModelTimeoutError(f"Model runtime timed out: {type(exc).__name__}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500:
            return ProviderUnavailableError(f"Model runtime returned HTTP {status}")
        return ValidationFailureError(f"Model runtime rejected the request with HTTP {status}")
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ProviderUnavailableError(f"Model runtime unreachable: {exc}")
    return exc


class ModelGateway:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def default_model(self) -> str:
        return self._settings.ollama_model

    @property
    def has_fallback(self) -> bool:
        return bool(self._settings.secondary_base_url)

    def providers(self) -> list[ProviderEndpoint]:
        endpoints = [ProviderEndpoint("primary", self._settings.ollama_base_url, self._settings.ollama_model)]
        if self._settings.secondary_base_url:
            endpoints.append(
                ProviderEndpoint(
                    "secondary",
                    self._settings.secondary_base_url,
                    self._settings.secondary_model or self._settings.ollama_model,
                )
            )
        return endpoints

    def _client(self, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport)

    def _payload(
        self,
        endpoint: ProviderEndpoint,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> dict[str, Any]:
        return {
            "model": endpoint.model,
            "prompt": prompt,
            "stream": stream,
            "keep_alive": self._settings.ollama_keep_alive,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        }

    async def _generate_one(
        self,
        endpoint: ProviderEndpoint,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout_sec: float,
    ) -> Generation:
        url = f"{endpoint.base_url.rstrip('/')}/api/generate"
        start = now_ms()
        async with self._client(timeout_sec) as client:
            response = await client.post(
                url,
                json=self._payload(endpoint, prompt, temperature=temperature, max_tokens=max_tokens, stream=False),
            )
            response.raise_for_status()
            data = response.json()

        if data.get("error"):
            raise ProviderUnavailableError(f"Model runtime error: {data['error']}")
        return Generation(
            text=str(data.get("response", "")),
            model=str(data.get("model") or endpoint.model),
            provider=endpoint.name,
            latency_ms=elapsed_ms(start),
            eval_count=data.get("eval_count"),
        )

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        timeout_sec: float | None = None,
    ) -> Generation:
        endpoints = self.providers()
        timeout = timeout_sec or self._settings.request_timeout_sec
        # One deadline covers every provider attempt.
        deadline_ms = now_ms() + timeout * 1000.0
        for index, endpoint in enumerate(endpoints):
            remaining = (deadline_ms - now_ms()) / 1000.0
            if remaining <= 0:
                raise ModelTimeoutError(
                    f"Request exceeded the {timeout:g}s deadline before provider '{endpoint.name}' was tried."
                )
            try:
                return await self._generate_one(
                    endpoint,
                    prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    timeout_sec=remaining,
                )
            except Exception as exc:
                error = as_gateway_error(exc)
                if index + 1 < len(endpoints) and is_transient(error):
                    logger.warning(
                        "model_provider_fallback: from=%s to=%s error=%s",
                        endpoint.name,
                        endpoints[index + 1].name,
                        f"{type(exc).__name__}: {exc}",
                    )
                    continue
                if error is exc:
                    raise
                raise error from exc
        raise ProviderUnavailableError("No model provider configured.")

    async def _stream_one(
        self,
        endpoint: ProviderEndpoint,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        stale_timeout_sec: float,
    ) -> AsyncIterator[StreamFragment]:
        url = f"{endpoint.base_url.rstrip('/')}/api/generate"
        timeout = httpx.Timeout(self._settings.request_timeout_sec, read=stale_timeout_sec)
        async with self._client(timeout) as client:
            async with client.stream(
                "POST",
                url,
                json=self._payload(endpoint, prompt, temperature=temperature, max_tokens=max_tokens, stream=True),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("model_stream_skip_line: %s", line[:80])
                        continue
                    if data.get("error"):
                        raise ProviderUnavailableError(f"Model runtime error: {data['error']}")
                    done = bool(data.get("done"))
                    yield StreamFragment(
                        text=str(data.get("response", "")),
                        done=done,
                        model=str(data.get("model") or endpoint.model),
                        provider=endpoint.name,
                        eval_count=data.get("eval_count"),
                    )
                    if done:
                        return

    async def stream(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        stale_timeout_sec: float | None = None,
    ) -> AsyncIterator[StreamFragment]:
        """Yield fragments from the first provider that answers.

        Falls back to the secondary provider only if the primary fails
        before producing any text.
        """
        endpoints = self.providers()
        stale = stale_timeout_sec or self._settings.stream_stale_timeout_sec
        for index, endpoint in enumerate(endpoints):
            produced = False
            try:
                async for fragment in self._stream_one(
                    endpoint,
                    prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    stale_timeout_sec=stale,
                ):
                    produced = True
                    yield fragment
                return
            except Exception as exc:
                error = as_gateway_error(exc)
                if not produced and index + 1 < len(endpoints) and is_transient(error):
                    logger.warning(
                        "model_stream_fallback: from=%s to=%s error=%s",
                        endpoint.name,
                        endpoints[index + 1].name,
                        f"{type(exc).__name__}: {exc}",
                    )
                    continue
                if error is exc:
                    raise
                raise error from exc

    async def health(self, *, probe: bool = False) -> dict[str, Any]:
        status: dict[str, Any] = {}
        for endpoint in self.providers():
            entry: dict[str, Any] = {"url": endpoint.base_url, "model": endpoint.model, "reachable": None}
            if probe:
                try:
                    async with self._client(4.0) as client:
                        response = await client.get(f"{endpoint.base_url.rstrip('/')}/api/tags")
                    entry["reachable"] = response.is_success
                    entry["status_code"] = response.status_code
                    if response.is_success:
                        models = [m.get("name") for m in response.json().get("models", [])]
                        entry["model_available"] = endpoint.model in models
                except httpx.HTTPError as exc:
                    entry["reachable"] = False
                    entry["error"] = str(exc)
            status[endpoint.name] = entry
        return status
