"""Pytest configuration for azops-copilot tests."""
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

# The API modules import each other by bare name
api_dir = Path(__file__).parent.parent / "api"
sys.path.insert(0, str(api_dir))

from app_services import build_services  # noqa: E402
from completion_llm import CompletionResult  # noqa: E402
from config_validator import Settings  # noqa: E402

SUBSCRIPTION = "sub-123"
VM_ID = f"/subscriptions/{SUBSCRIPTION}/resourceGroups/rg1/providers/Microsoft.Compute/virtualMachines/vm1"


class FakeAzureClient:
    """In-memory stand-in for AzureClient with call counters."""

    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.calls = []
        self.actions = []
        self._lock = threading.Lock()
        self.groups = ["rg1"]
        self.vms = {"rg1": [{
            "id": VM_ID,
            "name": "vm1",
            "type": "Microsoft.Compute/virtualMachines",
        }]}
        self.resources = {"rg1": [{
            "id": VM_ID,
            "name": "vm1",
            "type": "Microsoft.Compute/virtualMachines",
            "location": "westeurope",
            "tags": {"env": "dev"},
            "provisioningState": "Succeeded",
        }]}
        self.costs = {
            "columns": [{"name": "Cost"}, {"name": "ServiceName"}, {"name": "Currency"}],
            "rows": [[30.25, "Storage", "USD"], [120.5, "Virtual Machines", "USD"]],
        }
        self.vm_metric_errors = {}

    @property
    def subscription_scope(self):
        return f"/subscriptions/{SUBSCRIPTION}"

    def _call(self, name):
        with self._lock:
            self.calls.append(name)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def list_resource_groups(self):
        self._call("list_resource_groups")
        return list(self.groups)

    def list_resources(self, resource_group):
        self._call("list_resources")
        return self.resources.get(resource_group, [])

    def list_virtual_machines(self, resource_group):
        self._call("list_virtual_machines")
        return self.vms.get(resource_group, [])

    def get_vm_metrics(self, resource_id, timespan="PT24H", interval="PT1H"):
        self._call("get_vm_metrics")
        if resource_id in self.vm_metric_errors:
            raise self.vm_metric_errors[resource_id]
        return [{
            "name": {"value": "Percentage CPU"},
            "timeseries": [{"data": [
                {"timeStamp": "2024-06-15T00:00:00Z", "average": 12.5},
                {"timeStamp": "2024-06-15T01:00:00Z"},
            ]}],
        }]

    def query_costs(self, scope, date_from, date_to):
        self._call("query_costs")
        return self.costs

    def vm_power_action(self, vm_id, action):
        self._call("vm_power_action")
        self.actions.append((vm_id, action))

    def resize_vm(self, vm_id, size):
        self._call("resize_vm")
        self.actions.append((vm_id, f"resize:{size}"))
        return {}


class FakeCompletion:
    """
    Completion client returning scripted outcomes in order.
    An outcome is a string (answer text) or an exception to raise; the
    last outcome repeats once the script runs out.
    """

    backend = "fake"

    def __init__(self, *outcomes, external: bool = False):
        self.outcomes = list(outcomes) or ["Here is what I found."]
        self.external = external
        self.calls = []

    @property
    def is_external(self):
        return self.external

    def complete(self, messages):
        self.calls.append(messages)
        index = min(len(self.calls) - 1, len(self.outcomes) - 1)
        outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return CompletionResult(outcome, self.backend, 42)


def make_settings(**overrides) -> Settings:
    base = Settings(
        azure_subscription_id=SUBSCRIPTION,
        azure_tenant_id="tenant",
        azure_client_id="client",
        azure_client_secret="secret",
        completion_backend="ollama",
        retry_initial_delay_ms=10,
        data_fetch_timeout=2.0,
    )
    return replace(base, **overrides)


class SleepRecorder:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_azure():
    return FakeAzureClient()


@pytest.fixture
def fake_completion():
    return FakeCompletion()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_services(settings, fake_azure, fake_completion, sleeps):
    def _make(settings=settings, azure=fake_azure, completion=fake_completion):
        return build_services(settings, azure=azure, completion=completion, sleep=sleeps)
    return _make


@pytest.fixture
def make_client(make_services):
    from fastapi.testclient import TestClient
    from main import create_app

    def _make(**kwargs):
        services = make_services(**kwargs)
        return TestClient(create_app(services)), services
    return _make
