"""
Completion Service: the pipeline's only door to a language model.

Providers always stream from the upstream API, even when the caller only
wants the final text. Cancellation has a single code path: the
provider registers its stream's ``close`` on the CancellationToken, checks
the token between fragments and raises GenerationCancelled once it fires.

SDK exceptions are translated to ProviderError so the job queue can retry
them. The instance is built once per process by build_completion_service().
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from core.exceptions import GenerationCancelled, ProviderError
from services.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class CompletionRequest:
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float = 0.2
    max_tokens: int = 8192
    json_mode: bool = True


@dataclass
class CompletionResult:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: int = 0


class CompletionService:
    """Base class. Subclasses implement ``_iter_fragments``."""

    provider = "base"

    def _iter_fragments(
        self,
        request: CompletionRequest,
        cancel_token: Optional[CancellationToken],
        usage: Dict[str, int],
    ) -> Iterator[str]:
        raise NotImplementedError

    def _guarded(self, request, cancel_token, usage) -> Iterator[str]:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            for fragment in self._iter_fragments(request, cancel_token, usage):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if fragment:
                    yield fragment
        except (GenerationCancelled, ProviderError):
            raise
        except Exception as e:
            # A stream closed by the watcher surfaces as a transport error
            if cancel_token is not None and cancel_token.cancelled:
                raise GenerationCancelled(cancel_token.reason or "status_changed") from e
            raise ProviderError(f"{self.provider} completion failed: {e}", self.provider, request.model) from e
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

    def stream(self, request: CompletionRequest, cancel_token: Optional[CancellationToken] = None) -> Iterator[str]:
        """Text fragments as they arrive."""
        usage: Dict[str, int] = {}
        yield from self._guarded(request, cancel_token, usage)

    def complete(
        self,
        request: CompletionRequest,
        cancel_token: Optional[CancellationToken] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> CompletionResult:
        """Drain the stream into one result, forwarding fragments to ``on_chunk``."""
        start = time.monotonic()
        usage: Dict[str, int] = {"input_tokens": 0, "output_tokens": 0}
        parts = []
        for fragment in self._guarded(request, cancel_token, usage):
            parts.append(fragment)
            if on_chunk is not None:
                on_chunk(fragment)

        text = "".join(parts)
        if not text.strip():
            raise ProviderError("Completion returned no text", self.provider, request.model)

        return CompletionResult(
            text=text,
            model=request.model,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            duration_ms=int((time.monotonic() - start) * 1000),
        )


def _strip_vendor_prefix(model: str, vendor: str) -> str:
    """'google/gemini-2.5-pro' -> 'gemini-2.5-pro' for native SDKs."""
    prefix = f"{vendor}/"
    return model[len(prefix):] if model.startswith(prefix) else model


class OpenRouterCompletionService(CompletionService):
    """Any OpenAI-compatible endpoint; OpenRouter by default."""

    provider = "openrouter"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, config) -> "OpenRouterCompletionService":
        from openai import OpenAI

        if not config.OPENROUTER_API_KEY:
            raise ValueError("OPENROUTER_API_KEY is not set")
        client = OpenAI(
            api_key=config.OPENROUTER_API_KEY,
            base_url=config.OPENROUTER_BASE_URL,
            timeout=config.LLM_REQUEST_TIMEOUT_S,
            default_headers={
                "HTTP-Referer": config.OPENROUTER_APP_URL,
                "X-Title": config.OPENROUTER_APP_TITLE,
            },
        )
        return cls(client)

    def _iter_fragments(self, request, cancel_token, usage):
        kwargs = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        stream = self.client.chat.completions.create(**kwargs)
        if cancel_token is not None:
            cancel_token.add_close_callback(stream.close)
        try:
            for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage["input_tokens"] = chunk.usage.prompt_tokens or 0
                    usage["output_tokens"] = chunk.usage.completion_tokens or 0
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield delta.content
        finally:
            if cancel_token is not None:
                cancel_token.remove_close_callback(stream.close)
            stream.close()


class AnthropicCompletionService(CompletionService):
    provider = "anthropic"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, config) -> "AnthropicCompletionService":
        from anthropic import Anthropic

        if not config.ANTHROPIC_API_KEY:
            raise ValueError("ANTHROPIC_API_KEY is not set")
        return cls(Anthropic(api_key=config.ANTHROPIC_API_KEY, timeout=config.LLM_REQUEST_TIMEOUT_S))

    def _iter_fragments(self, request, cancel_token, usage):
        with self.client.messages.stream(
            model=_strip_vendor_prefix(request.model, "anthropic"),
            system=request.system_prompt,
            messages=[{"role": "user", "content": request.user_prompt}],
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        ) as stream:
            if cancel_token is not None:
                cancel_token.add_close_callback(stream.close)
            try:
                for text in stream.text_stream:
                    yield text
                final = stream.get_final_message()
                usage["input_tokens"] = final.usage.input_tokens or 0
                usage["output_tokens"] = final.usage.output_tokens or 0
            finally:
                if cancel_token is not None:
                    cancel_token.remove_close_callback(stream.close)


class GeminiCompletionService(CompletionService):
    """
    Google GenAI SDK.

    The SDK stream is a plain generator that cannot be closed from the
    watcher thread while it blocks, so cancellation here is observed at the
    next fragment boundary.
    """

    provider = "gemini"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(cls, config) -> "GeminiCompletionService":
        from google import genai

        if not config.GOOGLE_AI_API_KEY:
            raise ValueError("GOOGLE_AI_API_KEY is not set")
        return cls(genai.Client(api_key=config.GOOGLE_AI_API_KEY))

    def _iter_fragments(self, request, cancel_token, usage):
        from google.genai import types as genai_types

        config = genai_types.GenerateContentConfig(
            system_instruction=request.system_prompt,
            temperature=request.temperature,
            max_output_tokens=request.max_tokens,
            response_mime_type="application/json" if request.json_mode else None,
        )
        contents = [
            genai_types.Content(role="user", parts=[genai_types.Part(text=request.user_prompt)]),
        ]
        stream = self.client.models.generate_content_stream(
            model=_strip_vendor_prefix(request.model, "google"),
            contents=contents,
            config=config,
        )
        for chunk in stream:
            if getattr(chunk, "usage_metadata", None):
                usage["input_tokens"] = getattr(chunk.usage_metadata, "prompt_token_count", 0) or 0
                usage["output_tokens"] = getattr(chunk.usage_metadata, "candidates_token_count", 0) or 0
            if chunk.text:
                yield chunk.text


PROVIDERS = {
    "openrouter": OpenRouterCompletionService,
    "anthropic": AnthropicCompletionService,
    "gemini": GeminiCompletionService,
}


def build_completion_service(config) -> CompletionService:
    """Construct the configured provider. Called once by the process entry point."""
    name = (config.LLM_PROVIDER or "openrouter").lower()
    if name not in PROVIDERS:
        raise ValueError(f"Unknown LLM_PROVIDER: {config.LLM_PROVIDER}")
    service = PROVIDERS[name].from_settings(config)
    logger.info(f"Completion service initialised: {name}")
    return service
