"""
Model Layer — Generation service client & policy enforcement.

Responsibility:
- Abstract specific LLM client details (Ollama, OpenAI-compatible, Anthropic)
- Enforce timeouts and retries on non-streaming calls
- Relay streamed completions chunk by chunk
- JSON validation helper

This is the ONLY place where LLMs are called. Constructed explicitly and
injected; the hosting process owns its lifecycle (``await close()``).
"""

import json
import logging
import os
from typing import Any, AsyncIterator

import httpx

from observability.logger import Observability
from shared.models import ModelPolicy

logger = logging.getLogger(__name__)


class ModelSelector:
    """Manages LLM calls with reliability policies."""

    def __init__(self, ollama_url: str = "http://localhost:11434"):
        configured_base_url = os.getenv("MODEL_BASE_URL", "").strip()
        self.base_url = (configured_base_url or ollama_url).rstrip("/")
        provider_raw = os.getenv("MODEL_PROVIDER", "auto").strip().lower()
        if provider_raw not in {"auto", "ollama", "openai_compatible", "anthropic"}:
            provider_raw = "auto"
        self.provider = self._resolve_provider(provider_raw, self.base_url)
        self.api_key = os.getenv("MODEL_API_KEY", "").strip()
        if not self.api_key:
            if self.provider == "anthropic":
                self.api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
            elif self.provider == "openai_compatible":
                self.api_key = os.getenv("OPENAI_API_KEY", "").strip()

        base_headers: dict[str, str] = {}
        if self.provider == "openai_compatible" and self.api_key:
            base_headers["Authorization"] = f"Bearer {self.api_key}"

        # Persistent client with connection pooling
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=60.0,  # default, overridden by policy
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
            headers=base_headers,
        )

    async def generate(
        self,
        messages: list[dict],
        policy: ModelPolicy,
        session_id: str | None = None,
    ) -> dict[str, Any] | str:
        """
        Execute a non-streaming generation with retry/timeout policy.
        Returns a parsed dict if json_mode=True, else string.
        """
        obs = Observability(session_id)

        attempt = 0
        last_error: Exception | None = None

        while attempt < policy.max_retries:
            attempt += 1
            try:
                with obs.measure(
                    "model_call",
                    {
                        "model": policy.model_name,
                        "attempt": attempt,
                        "provider": self.provider,
                    },
                ):
                    response_text = await self._call_model(messages, policy)

                if policy.json_mode:
                    return self._parse_json(response_text)
                return response_text

            except Exception as e:
                last_error = e
                logger.warning(
                    "Model call failed (attempt %d/%d): %s",
                    attempt,
                    policy.max_retries,
                    e,
                )
                if attempt >= policy.max_retries:
                    obs.log_event(
                        "model_failure",
                        {"error": str(e), "policy": policy.model_dump()},
                        level="ERROR",
                    )
                    raise

        raise last_error or RuntimeError("Unknown model failure")

    async def stream(self, messages: list[dict], policy: ModelPolicy) -> AsyncIterator[str]:
        """Stream completion text chunks. Finite, not restartable, never retried."""
        if self.provider == "anthropic":
            chunks = self._stream_anthropic_messages(messages, policy)
        elif self.provider == "openai_compatible":
            chunks = self._stream_openai_chat(messages, policy)
        else:
            chunks = self._stream_ollama_chat(messages, policy)
        async for piece in chunks:
            if piece:
                yield piece

    def _resolve_provider(self, provider_raw: str, base_url: str) -> str:
        if provider_raw != "auto":
            return provider_raw

        lowered = (base_url or "").strip().lower()
        if "anthropic.com" in lowered:
            return "anthropic"
        if "openai.com" in lowered or lowered.endswith("/v1"):
            return "openai_compatible"
        return "ollama"

    async def _call_model(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level model API call dispatching by configured provider."""
        if self.provider == "anthropic":
            return await self._call_anthropic_messages(messages, policy)
        if self.provider == "openai_compatible":
            return await self._call_openai_chat(messages, policy)
        return await self._call_ollama_chat(messages, policy)

    # ─── Anthropic ────────────────────────────────────────────

    def _anthropic_payload(self, messages: list[dict], policy: ModelPolicy, stream: bool) -> dict[str, Any]:
        if not self.api_key:
            raise RuntimeError(
                "ANTHROPIC_API_KEY (or MODEL_API_KEY) is required when MODEL_PROVIDER=anthropic."
            )

        payload_messages: list[dict[str, str]] = []
        system_parts: list[str] = []
        for message in messages:
            role = str(message.get("role", "user")).strip().lower()
            text = str(message.get("content", "")).strip()
            if not text:
                continue
            if role == "system":
                system_parts.append(text)
                continue
            if role not in {"user", "assistant"}:
                role = "user"
            payload_messages.append({"role": role, "content": text})

        # System-only prompts (clarity check, intent detection) still need a user turn.
        if not payload_messages:
            payload_messages = [{"role": "user", "content": "Follow the instructions above."}]

        system_prompt = "\n\n".join(system_parts).strip()
        if policy.json_mode:
            json_guard = "Return ONLY a valid JSON object."
            system_prompt = f"{system_prompt}\n\n{json_guard}".strip() if system_prompt else json_guard

        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": payload_messages,
            "temperature": policy.temperature,
            "max_tokens": 1024,
            "stream": stream,
        }
        if system_prompt:
            payload["system"] = system_prompt
        return payload

    def _anthropic_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
        }

    async def _call_anthropic_messages(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level Anthropic /v1/messages call."""
        response = await self._client.post(
            "/v1/messages",
            json=self._anthropic_payload(messages, policy, stream=False),
            headers=self._anthropic_headers(),
            timeout=policy.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()
        text_parts: list[str] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "text":
                continue
            text_value = str(block.get("text", "")).strip()
            if text_value:
                text_parts.append(text_value)
        if not text_parts:
            raise ValueError("Anthropic response missing text content")
        return "\n".join(text_parts)

    async def _stream_anthropic_messages(self, messages: list[dict], policy: ModelPolicy) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            "/v1/messages",
            json=self._anthropic_payload(messages, policy, stream=True),
            headers=self._anthropic_headers(),
            timeout=policy.timeout_seconds,
        ) as response:
            response.raise_for_status()
            async for data in self._iter_sse_data(response):
                if data.get("type") == "error":
                    raise RuntimeError(str(data.get("error")))
                if data.get("type") != "content_block_delta":
                    continue
                delta = data.get("delta") or {}
                yield str(delta.get("text", ""))

    # ─── Ollama ───────────────────────────────────────────────

    def _ollama_payload(self, messages: list[dict], policy: ModelPolicy, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": messages,
            "stream": stream,
            "keep_alive": "10m",
            "options": {
                "temperature": policy.temperature,
                "num_ctx": 4096,
                "num_predict": 1024,
            },
        }
        if policy.json_mode:
            payload["format"] = "json"
        return payload

    async def _call_ollama_chat(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Low-level Ollama /api/chat call."""
        response = await self._client.post(
            "/api/chat",
            json=self._ollama_payload(messages, policy, stream=False),
            timeout=policy.timeout_seconds,
        )
        response.raise_for_status()
        return response.json().get("message", {}).get("content", "")

    async def _stream_ollama_chat(self, messages: list[dict], policy: ModelPolicy) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            "/api/chat",
            json=self._ollama_payload(messages, policy, stream=True),
            timeout=policy.timeout_seconds,
        ) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if data.get("error"):
                    raise RuntimeError(str(data.get("error")))
                yield str((data.get("message") or {}).get("content", ""))
                if data.get("done"):
                    break

    # ─── OpenAI-compatible ────────────────────────────────────

    def _openai_payload(self, messages: list[dict], policy: ModelPolicy, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": policy.model_name,
            "messages": messages,
            "temperature": policy.temperature,
            "stream": stream,
        }
        if policy.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def _call_openai_chat(self, messages: list[dict], policy: ModelPolicy) -> str:
        """Call for OpenAI-compatible /v1/chat/completions providers."""
        response = await self._client.post(
            "/v1/chat/completions",
            json=self._openai_payload(messages, policy, stream=False),
            timeout=policy.timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ValueError("OpenAI-compatible response missing choices")
        message = choices[0].get("message") or {}
        return str(message.get("content", ""))

    async def _stream_openai_chat(self, messages: list[dict], policy: ModelPolicy) -> AsyncIterator[str]:
        async with self._client.stream(
            "POST",
            "/v1/chat/completions",
            json=self._openai_payload(messages, policy, stream=True),
            timeout=policy.timeout_seconds,
        ) as response:
            response.raise_for_status()
            async for data in self._iter_sse_data(response):
                choices = data.get("choices") or []
                if not choices:
                    continue
                delta = choices[0].get("delta") or {}
                yield str(delta.get("content") or "")

    # ─── Helpers ──────────────────────────────────────────────

    async def _iter_sse_data(self, response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded ``data:`` payloads of a server-sent event stream."""
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            raw = line[len("data:"):].strip()
            if not raw:
                continue
            if raw == "[DONE]":
                break
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                yield data

    def _parse_json(self, text: str) -> dict[str, Any]:
        """Parse JSON response, handling common markdown issues."""
        clean_text = text.strip()
        if clean_text.startswith("```"):
            clean_text = clean_text.split("\n", 1)[1].rsplit("\n", 1)[0]

        try:
            return json.loads(clean_text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON from model: {e}") from e

    async def close(self) -> None:
        """Close persistent connections."""
        await self._client.aclose()
