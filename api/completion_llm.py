"""
completion_llm.py — Completion service abstraction for the query pipeline.

Provides a unified ``CompletionClient.complete()`` that dispatches to:
  • Azure OpenAI  (HTTP POST to a deployment URL, ``api-key`` header)
  • OpenAI        (official SDK)
  • Ollama        (local, self-hosted)

Each backend takes the ordered message list and returns the answer text.
Upstream failures are raised as taxonomy errors; in particular rate
limiting is raised as ``RateLimitedError`` (with Retry-After when the
service sent one) so the retry executor can tell "slow down" apart from
"the request is broken".  Calls are blocking; the request handler runs
them in a worker thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import openai
import requests

from errors import (
    AuthError,
    InvalidRequestError,
    NotFoundError,
    RateLimitedError,
    UnknownUpstreamError,
    UpstreamTimeoutError,
    parse_retry_after,
    raise_for_response,
)

logger = logging.getLogger("azops.llm")

SERVICE = "completion"


@dataclass
class CompletionResult:
    content: str
    backend: str
    tokens: Optional[int] = None


def _post(url: str, *, timeout: float, **kwargs) -> requests.Response:
    try:
        return requests.post(url, timeout=timeout, **kwargs)
    except requests.Timeout as exc:
        raise UpstreamTimeoutError(f"{SERVICE} did not respond within {timeout}s", SERVICE) from exc
    except requests.ConnectionError as exc:
        raise UnknownUpstreamError(f"{SERVICE} is unreachable", SERVICE) from exc


# ---------------------------------------------------------------------------
# Azure OpenAI
# ---------------------------------------------------------------------------

def ask_azure_openai(
    messages: List[Dict[str, str]],
    endpoint: str,
    api_key: str,
    temperature: float = 0.7,
    max_tokens: int = 1000,
    timeout: int = 60,
) -> CompletionResult:
    """
    Call an Azure OpenAI chat-completions deployment.
    ``endpoint`` is the full deployment URL including ``api-version``.
    """
    if not endpoint or not api_key:
        raise AuthError("Azure OpenAI endpoint or API key not configured", SERVICE)

    payload = {
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "top_p": 0.95,
        "frequency_penalty": 0,
        "presence_penalty": 0,
        "stop": None,
    }
    resp = _post(endpoint, json=payload, timeout=timeout,
                 headers={"Content-Type": "application/json", "api-key": api_key})
    raise_for_response(resp, SERVICE)
    data = resp.json()
    answer = data["choices"][0]["message"]["content"].strip()
    tokens = (data.get("usage") or {}).get("total_tokens")
    return CompletionResult(answer, "azure", tokens)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def ask_openai(
    messages: List[Dict[str, str]],
    api_key: str,
    model: str = "gpt-4o-mini",
    temperature: float = 0.7,
    max_tokens: int = 1000,
    timeout: int = 60,
) -> CompletionResult:
    """Call the OpenAI Chat Completions API with SDK retries disabled."""
    if not api_key:
        raise AuthError("OpenAI API key not configured", SERVICE)

    client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
    try:
        resp = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    except openai.RateLimitError as exc:
        raise RateLimitedError(
            f"{SERVICE} rate limit reached", SERVICE,
            retry_after=parse_retry_after(exc.response.headers.get("retry-after")),
        ) from exc
    except openai.AuthenticationError as exc:
        raise AuthError(f"{SERVICE} rejected the API key", SERVICE) from exc
    except openai.PermissionDeniedError as exc:
        raise AuthError(f"{SERVICE} denied access", SERVICE) from exc
    except openai.NotFoundError as exc:
        raise NotFoundError(f"{SERVICE} model not found: {model}", SERVICE) from exc
    except openai.BadRequestError as exc:
        raise InvalidRequestError(f"{SERVICE} rejected the request", SERVICE) from exc
    except openai.APITimeoutError as exc:
        raise UpstreamTimeoutError(f"{SERVICE} did not respond within {timeout}s", SERVICE) from exc
    except openai.APIError as exc:
        raise UnknownUpstreamError(f"{SERVICE} error: {exc.__class__.__name__}", SERVICE) from exc

    answer = (resp.choices[0].message.content or "").strip()
    tokens = resp.usage.total_tokens if resp.usage else None
    return CompletionResult(answer, "openai", tokens)


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------

def ask_ollama(
    messages: List[Dict[str, str]],
    url: str = "http://localhost:11434",
    model: str = "llama3",
    temperature: float = 0.7,
    timeout: int = 120,
) -> CompletionResult:
    """Send a chat completion request to a local Ollama instance."""
    payload = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": {"temperature": temperature},
    }
    resp = _post(f"{url.rstrip('/')}/api/chat", json=payload, timeout=timeout)
    raise_for_response(resp, SERVICE)
    data = resp.json()
    answer = data.get("message", {}).get("content", "").strip()
    return CompletionResult(answer, "ollama", data.get("eval_count"))


# ---------------------------------------------------------------------------
# Unified dispatcher
# ---------------------------------------------------------------------------

class CompletionClient:
    """Backend selected once from Settings; ``complete()`` is the only entry point."""

    BACKENDS = ("azure", "openai", "ollama")

    def __init__(self, settings):
        if settings.completion_backend not in self.BACKENDS:
            raise ValueError(f"Unknown completion backend: {settings.completion_backend}")
        self.settings = settings
        self.backend = settings.completion_backend

    @property
    def is_external(self) -> bool:
        """True when prompts leave the host (redaction applies)."""
        return self.backend in ("azure", "openai")

    def complete(self, messages: List[Dict[str, str]]) -> CompletionResult:
        s = self.settings
        logger.debug("Completion request: backend=%s messages=%d", self.backend, len(messages))
        if self.backend == "azure":
            return ask_azure_openai(
                messages, s.azure_openai_endpoint, s.azure_openai_api_key,
                temperature=s.completion_temperature, max_tokens=s.completion_max_tokens,
            )
        if self.backend == "openai":
            return ask_openai(
                messages, s.openai_api_key, model=s.openai_model,
                temperature=s.completion_temperature, max_tokens=s.completion_max_tokens,
            )
        return ask_ollama(
            messages, url=s.ollama_url, model=s.ollama_model,
            temperature=s.completion_temperature,
        )
