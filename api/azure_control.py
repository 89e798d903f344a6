import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from errors import AuthError, InvalidRequestError, raise_for_response

logger = logging.getLogger("azops.azure")

MANAGEMENT_URL = "https://management.azure.com"
LOGIN_URL = "https://login.microsoftonline.com"

RESOURCES_API = "2021-04-01"
COMPUTE_API = "2023-03-01"
METRICS_API = "2018-01-01"
COST_API = "2023-08-01"

VM_METRIC_NAMES = "Percentage CPU,Available Memory Bytes,Network In,Network Out"

VM_POWER_ACTIONS = {
    "start": "start",
    "stop": "powerOff",
    "restart": "restart",
}


class AzureClient:
    """
    Thin REST client for the Azure Resource Manager APIs the copilot reads.
    Built once at startup; the bearer token is refreshed on demand.
    """

    def __init__(
        self,
        subscription_id: str,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.subscription_id = subscription_id
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

        self.session = session or requests.Session()
        self.token: Optional[str] = None
        self.token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "AzureClient":
        return cls(
            subscription_id=settings.azure_subscription_id,
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )

    @property
    def subscription_scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"

    # ---------------------------
    # Azure AD auth
    # ---------------------------
    def authenticate(self) -> None:
        """
        Get a management-plane token with the client-credentials grant.
        No-op while the cached token has more than a minute left.
        """
        with self._token_lock:
            if self.token is not None and time.time() < self.token_expires_at - 60:
                return
            if not (self.tenant_id and self.client_id and self.client_secret):
                raise AuthError("Azure service principal credentials are not configured", "azure")

            url = f"{LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/token"
            r = self.session.post(url, data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": f"{MANAGEMENT_URL}/.default",
            }, timeout=self.timeout)
            raise_for_response(r, "azure")

            body = r.json()
            self.token = body["access_token"]
            self.token_expires_at = time.time() + int(body.get("expires_in", 3600))
            logger.info("Acquired Azure management token (expires in %ss)", body.get("expires_in"))

    def _headers(self) -> Dict[str, str]:
        self.authenticate()
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        r = self.session.get(url, headers=self._headers(), params=params, timeout=self.timeout)
        raise_for_response(r, "azure")
        return r.json()

    def _get_paged(self, url: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """Follow ``nextLink`` until the collection is exhausted."""
        items: List[Dict[str, Any]] = []
        body = self._get(url, params)
        items.extend(body.get("value", []))
        while body.get("nextLink"):
            body = self._get(body["nextLink"])
            items.extend(body.get("value", []))
        return items

    # ---------------------------
    # Resource groups / resources
    # ---------------------------
    def list_resource_groups(self) -> List[str]:
        url = f"{MANAGEMENT_URL}{self.subscription_scope}/resourcegroups"
        groups = self._get_paged(url, {"api-version": RESOURCES_API})
        return [g["name"] for g in groups]

    def list_resources(self, resource_group: str) -> List[Dict[str, Any]]:
        url = f"{MANAGEMENT_URL}{self.subscription_scope}/resourceGroups/{resource_group}/resources"
        return self._get_paged(url, {
            "api-version": RESOURCES_API,
            "$expand": "provisioningState",
        })

    # ---------------------------
    # Virtual machines (Compute)
    # ---------------------------
    def list_virtual_machines(self, resource_group: str) -> List[Dict[str, Any]]:
        url = (f"{MANAGEMENT_URL}{self.subscription_scope}/resourceGroups/{resource_group}"
               "/providers/Microsoft.Compute/virtualMachines")
        return self._get_paged(url, {"api-version": COMPUTE_API})

    def vm_power_action(self, vm_id: str, action: str) -> None:
        """Start / stop (power off) / restart a VM; returns once Azure accepts it."""
        verb = VM_POWER_ACTIONS.get(action)
        if verb is None:
            raise InvalidRequestError(f"Unsupported VM action: {action}", "azure")
        url = f"{MANAGEMENT_URL}{vm_id}/{verb}"
        r = self.session.post(url, headers=self._headers(),
                              params={"api-version": COMPUTE_API}, timeout=self.timeout)
        raise_for_response(r, "azure")

    def resize_vm(self, vm_id: str, size: str) -> Dict[str, Any]:
        url = f"{MANAGEMENT_URL}{vm_id}"
        payload = {"properties": {"hardwareProfile": {"vmSize": size}}}
        r = self.session.patch(url, headers=self._headers(), json=payload,
                               params={"api-version": COMPUTE_API}, timeout=self.timeout)
        raise_for_response(r, "azure")
        return r.json() if r.content else {}

    # ---------------------------
    # Monitor metrics
    # ---------------------------
    def get_vm_metrics(self, resource_id: str, timespan: str = "PT24H",
                       interval: str = "PT1H") -> List[Dict[str, Any]]:
        """Average CPU / memory / network series for one VM."""
        url = f"{MANAGEMENT_URL}{resource_id}/providers/Microsoft.Insights/metrics"
        body = self._get(url, {
            "api-version": METRICS_API,
            "timespan": timespan,
            "interval": interval,
            "metricnames": VM_METRIC_NAMES,
            "aggregation": "Average",
        })
        return body.get("value", [])

    # ---------------------------
    # Cost Management
    # ---------------------------
    def query_costs(self, scope: str, date_from: str, date_to: str) -> Dict[str, Any]:
        """
        Actual cost between two ISO dates, grouped by service name.
        Returns the ``properties`` block (``columns`` + ``rows``).
        """
        url = f"{MANAGEMENT_URL}{scope}/providers/Microsoft.CostManagement/query"
        payload = {
            "type": "ActualCost",
            "timeframe": "Custom",
            "timePeriod": {
                "from": f"{date_from}T00:00:00Z",
                "to": f"{date_to}T23:59:59Z",
            },
            "dataset": {
                "granularity": "None",
                "aggregation": {"totalCost": {"name": "Cost", "function": "Sum"}},
                "grouping": [{"type": "Dimension", "name": "ServiceName"}],
            },
        }
        r = self.session.post(url, headers=self._headers(), json=payload,
                              params={"api-version": COST_API}, timeout=self.timeout)
        raise_for_response(r, "azure")
        return r.json().get("properties", {})
