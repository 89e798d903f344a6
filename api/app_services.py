"""
app_services.py — Process-wide service handles.

Everything with process lifetime (cache, breakers, metrics, clients,
limiter) is built once by ``build_services()`` at startup and handed to
the route setup functions.  Tests build their own ``AppServices`` with
fresh instances and fake clients.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict

from slowapi import Limiter
from slowapi.util import get_remote_address

from azure_control import AzureClient
from azure_data import DataFetcher
from circuit_breaker import CircuitBreaker, build_breakers
from completion_llm import CompletionClient
from config_validator import Settings
from result_cache import ResultCache
from telemetry import MetricsStore


@dataclass
class AppServices:
    settings: Settings
    cache: ResultCache
    metrics: MetricsStore
    breakers: Dict[str, CircuitBreaker]
    azure: object
    completion: object
    fetcher: DataFetcher
    limiter: Limiter
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


def build_limiter() -> Limiter:
    """Per-client-IP fixed-window limiter; Retry-After is set by the 429 handler."""
    return Limiter(key_func=get_remote_address, headers_enabled=False)


def build_services(settings: Settings, azure=None, completion=None,
                   sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> AppServices:
    """
    Wire the service graph.  ``azure`` / ``completion`` default to the real
    clients built from ``settings``.
    """
    cache = ResultCache(max_size=settings.cache_max_size, ttl=settings.cache_ttl,
                        update_age_on_get=True)
    metrics = MetricsStore(max_size=settings.metrics_max_size, ttl=settings.metrics_ttl)
    breakers = build_breakers(settings)
    azure = azure if azure is not None else AzureClient.from_settings(settings)
    completion = completion if completion is not None else CompletionClient(settings)
    fetcher = DataFetcher(azure, cache, breakers["azure"], metrics)
    return AppServices(
        settings=settings,
        cache=cache,
        metrics=metrics,
        breakers=breakers,
        azure=azure,
        completion=completion,
        fetcher=fetcher,
        limiter=build_limiter(),
        sleep=sleep,
    )
