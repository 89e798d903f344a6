"""
azure_data.py — Intent → cloud data dispatcher.

``DataFetcher.fetch_for_intent()`` returns a DataEnvelope dict
(``{"type": "costs"|"metrics"|"resources"|"error", "data": ...}``) or
None when the intent has no associated data.

Every fetch goes cache first, then the ``azure`` circuit breaker, then
the AzureClient (blocking requests calls run in worker threads).
Failures never propagate: they come back as an ``error`` envelope so the
request can still be answered without fresh data.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from errors import CopilotError, classify_error
from query_intents import Intent
from result_cache import MISS, ResultCache
from telemetry import MetricsStore, track_api_call

logger = logging.getLogger("azops.azure")

COST_WINDOW_DAYS = 30
METRICS_TIMESPAN = "PT24H"

CATEGORY_BY_INTENT = {
    Intent.COST_VM: "costs",
    Intent.COST_STORAGE: "costs",
    Intent.COST_GENERAL: "costs",
    Intent.PERFORMANCE_VM: "metrics",
    Intent.PERFORMANCE_GENERAL: "metrics",
    Intent.RESOURCES_LIST: "resources",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def error_envelope(category: str, message: str) -> Dict[str, Any]:
    return {
        "type": "error",
        "error": True,
        "category": category,
        "message": message,
        "data": None,
    }


def _resource_group_of(resource_id: str) -> Optional[str]:
    parts = resource_id.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return None


class DataFetcher:
    """Dispatches intents to AzureClient fetchers through cache and breaker."""

    def __init__(
        self,
        client,
        cache: ResultCache,
        breaker,
        metrics: MetricsStore,
        today: Callable[[], date] = _utc_today,
    ):
        self.client = client
        self.cache = cache
        self.breaker = breaker
        self.metrics = metrics
        self._today = today
        self._fetchers = {
            "costs": self._fetch_costs,
            "metrics": self._fetch_metrics,
            "resources": self._fetch_resources,
        }

    async def fetch_for_intent(self, intent: Intent,
                               timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Return the envelope for ``intent`` (None when it has no data).
        A fetch exceeding ``timeout`` is abandoned, counted as an azure
        failure and reported as an error envelope.
        """
        category = CATEGORY_BY_INTENT.get(intent)
        if category is None:
            return None

        try:
            if timeout:
                return await asyncio.wait_for(self._cached_fetch(category), timeout)
            return await self._cached_fetch(category)
        except asyncio.TimeoutError:
            # the abandoned call never reached the breaker's failure path
            self.breaker.record_failure()
            self.metrics.record("azure_fetch_timeout", 1, category=category, timeout=timeout)
            logger.warning("Azure %s fetch timed out after %ss", category, timeout)
            return error_envelope(category, f"Timed out fetching {category} data from Azure.")
        except Exception as exc:
            kind = classify_error(exc)
            logger.warning("Azure %s fetch failed (%s): %s", category, kind.value, exc)
            message = exc.message if isinstance(exc, CopilotError) else "Unexpected error"
            return error_envelope(category, f"Failed to fetch {category} data: {message}")

    def cache_key(self, category: str) -> str:
        scope = self.client.subscription_scope
        if category == "costs":
            return f"costs-{scope}-{COST_WINDOW_DAYS}d"
        if category == "metrics":
            return f"metrics-{scope}-{METRICS_TIMESPAN}"
        return f"resources-{scope}"

    async def _cached_fetch(self, category: str) -> Dict[str, Any]:
        key = self.cache_key(category)
        cached = self.cache.get(key)
        if cached is not MISS:
            self.metrics.record("azure_cache_hit", 1, category=category)
            return cached

        envelope = await track_api_call(
            self.metrics, self.breaker, "azure", category, self._fetchers[category],
        )
        if not envelope.get("skipped"):
            self.cache.set(key, envelope)
        return envelope

    # ---------------------------------------------------------------------------
    # Fetchers
    # ---------------------------------------------------------------------------

    async def _fetch_costs(self) -> Dict[str, Any]:
        scope = self.client.subscription_scope
        today = self._today()
        start = today - timedelta(days=COST_WINDOW_DAYS)
        result = await asyncio.to_thread(
            self.client.query_costs, scope, start.isoformat(), today.isoformat(),
        )

        columns = [c.get("name", "").lower() for c in result.get("columns", [])]
        cost_idx = columns.index("cost") if "cost" in columns else 0
        service_idx = columns.index("servicename") if "servicename" in columns else 1
        currency_idx = columns.index("currency") if "currency" in columns else None

        by_service = []
        currency = None
        for row in result.get("rows", []):
            cost = float(row[cost_idx] or 0)
            by_service.append({"service": row[service_idx], "cost": round(cost, 2)})
            if currency_idx is not None and currency is None:
                currency = row[currency_idx]
        by_service.sort(key=lambda s: s["cost"], reverse=True)

        total = sum(s["cost"] for s in by_service)
        days_in_month = calendar.monthrange(today.year, today.month)[1]
        projected = total / today.day * days_in_month

        return {
            "type": "costs",
            "data": {
                "total": round(total, 2),
                "projected": round(projected, 2),
                "currency": currency or "USD",
                "byService": by_service,
                "timeframe": {"from": start.isoformat(), "to": today.isoformat()},
                "timestamp": _now_iso(),
            },
        }

    async def _fetch_metrics(self) -> Dict[str, Any]:
        groups = await asyncio.to_thread(self.client.list_resource_groups)
        vm_lists = await asyncio.gather(*(
            asyncio.to_thread(self.client.list_virtual_machines, g) for g in groups
        ))
        vms = [vm for vms in vm_lists for vm in vms]
        if not vms:
            return {"type": "metrics", "data": [], "message": "No virtual machines found"}

        results = await asyncio.gather(*(self._vm_metrics(vm) for vm in vms), return_exceptions=True)
        data, failures = [], []
        for vm, result in zip(vms, results):
            if isinstance(result, Exception):
                logger.warning("Failed to fetch metrics for %s: %s", vm.get("name"), result)
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                data.append(result)
        if not data:
            raise failures[0]

        envelope = {"type": "metrics", "data": data}
        if failures:
            # partial results are served but never cached under the category key
            envelope["skipped"] = len(failures)
        return envelope

    async def _vm_metrics(self, vm: Dict[str, Any]) -> Dict[str, Any]:
        """Metrics for one VM, cached per resource id."""
        key = f"metrics-{vm['id']}-{METRICS_TIMESPAN}"
        cached = self.cache.get(key)
        if cached is not MISS:
            return cached
        series = await asyncio.to_thread(self.client.get_vm_metrics, vm["id"], METRICS_TIMESPAN)

        result = {
            "resourceName": vm.get("name"),
            "resourceType": vm.get("type"),
            "resourceGroup": _resource_group_of(vm["id"]),
            "metrics": [
                {
                    "name": m.get("name", {}).get("value"),
                    "data": [
                        {"timestamp": p.get("timeStamp"), "value": p.get("average") or 0}
                        for p in (m.get("timeseries") or [{}])[0].get("data", [])
                    ],
                }
                for m in series
            ],
            "timestamp": _now_iso(),
        }
        self.cache.set(key, result)
        return result

    async def _fetch_resources(self) -> Dict[str, Any]:
        groups = await asyncio.to_thread(self.client.list_resource_groups)
        per_group = await asyncio.gather(*(
            asyncio.to_thread(self.client.list_resources, g) for g in groups
        ))
        resources: List[Dict[str, Any]] = []
        for group, items in zip(groups, per_group):
            for r in items:
                resources.append({
                    "name": r.get("name"),
                    "type": r.get("type"),
                    "location": r.get("location"),
                    "resourceGroup": group,
                    "id": r.get("id"),
                    "tags": r.get("tags") or {},
                    "provisioningState": r.get("provisioningState")
                    or (r.get("properties") or {}).get("provisioningState"),
                })
        return {"type": "resources", "data": resources, "count": len(resources)}
