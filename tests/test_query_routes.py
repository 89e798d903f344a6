"""
End-to-end tests for POST /api/query and its companion routes.
"""

from dataclasses import replace

import pytest

from errors import AuthError, InvalidRequestError, RateLimitedError, UnknownUpstreamError
from query_routes import parse_query_request

from conftest import FakeAzureClient, FakeCompletion


def ask(client, text, history=None, **extra):
    messages = list(history or []) + [{"role": "user", "content": text}]
    return client.post("/api/query", json={"messages": messages, **extra})


def metric_names(services):
    return [m.name for m in services.metrics.all()]


class TestScenarios:

    def test_cost_question_gets_cost_data(self, make_client, fake_completion):
        fake_completion.outcomes = ["Your spend is 150.75 USD so far this month."]
        client, services = make_client()
        response = ask(client, "What's my current Azure spending?")

        assert response.status_code == 200
        body = response.json()
        assert body["intent"] == "cost_general"
        assert body["azureData"]["type"] == "costs"
        assert body["azureData"]["data"]["total"] == 150.75
        assert body["message"] == "Your spend is 150.75 USD so far this month."
        assert body["requiresApproval"] is False
        assert body["action"] is None
        assert body["metrics"]["hasData"] is True
        assert body["metrics"]["tokens"] == 42

        sent = fake_completion.calls[0]
        assert sent[0]["role"] == "system"
        assert sent[1]["content"].startswith("Current Azure data: ")
        assert sent[-1] == {"role": "user", "content": "What's my current Azure spending?"}

    def test_restart_proposal_requires_approval(self, make_client, fake_azure, fake_completion):
        fake_completion.outcomes = ['I can restart resource "vm1" in group "rg1" once you approve.']
        client, _ = make_client()
        response = ask(client, "restart vm1 in group rg1")

        assert response.status_code == 200
        body = response.json()
        assert body["intent"] == "unknown"
        assert body["azureData"] is None
        assert body["requiresApproval"] is True
        assert body["action"] == {
            "type": "unknown",
            "operation": "restart",
            "resource": "vm1",
            "resourceGroup": "rg1",
        }
        # proposing is not executing
        assert fake_azure.calls == []
        assert fake_azure.actions == []

    def test_admission_limit(self, make_client, fake_completion):
        client, services = make_client()
        for _ in range(100):
            assert ask(client, "hello").status_code == 200

        response = ask(client, "hello")
        assert response.status_code == 429
        body = response.json()
        assert body["error"]["kind"] == "rate_limit"
        assert body["error"]["retryable"] is True
        assert body["retryAfter"] >= 1
        assert int(response.headers["Retry-After"]) >= 1
        assert body["correlationId"] == response.headers["X-Correlation-ID"]

        names = metric_names(services)
        assert names.count("request_received") == 100
        assert names.count("rate_limit_exceeded") == 1
        assert len(fake_completion.calls) == 100

    def test_data_fetch_timeout_still_answers(self, make_client, settings, fake_completion):
        client, services = make_client(
            settings=replace(settings, data_fetch_timeout=0.05),
            azure=FakeAzureClient(delay=0.5),
        )
        response = ask(client, "What's my current Azure spending?")

        assert response.status_code == 200
        body = response.json()
        assert body["message"]
        assert body["azureData"]["type"] == "error"
        assert body["azureData"]["category"] == "costs"
        assert "azure_fetch_timeout" in metric_names(services)
        assert '"type":"error"' in fake_completion.calls[0][1]["content"]


class TestValidation:

    @pytest.mark.parametrize("payload,fragment", [
        ({}, "messages must be an array"),
        ({"messages": "hi"}, "messages must be an array"),
        ({"messages": []}, "at least one message"),
        ({"messages": [{"role": "assistant", "content": "hi"}]}, "last message"),
        ({"messages": [{"role": "robot", "content": "hi"}]}, "messages.0.role"),
        ({"messages": [{"role": "user", "content": ""}]}, "non-empty content"),
        ({"messages": [{"role": "user", "content": "   "}]}, "non-empty content"),
        ({"messages": [{"role": "user", "content": "x" * 8001}]}, "messages.0.content"),
        ({"messages": [{"role": "user", "content": "hi"}], "action": {"type": "delete"}}, "action.type"),
    ])
    def test_rejected_with_400(self, make_client, fake_completion, payload, fragment):
        client, services = make_client()
        response = client.post("/api/query", json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["kind"] == "invalid_request"
        assert body["error"]["retryable"] is False
        assert fragment in body["error"]["message"]
        assert "validation_failed" in metric_names(services)
        assert "request_received" not in metric_names(services)
        assert fake_completion.calls == []

    def test_malformed_json(self, make_client):
        client, _ = make_client()
        response = client.post("/api/query", content=b"{not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_history_and_allowed_action_pass(self):
        request = parse_query_request({
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "user", "content": "list my resources"},
            ],
            "action": {"type": "scale", "size": "Standard_B2s"},
        })
        assert len(request.messages) == 3
        assert request.action.type == "scale"

    def test_empty_history_turn_is_accepted(self):
        request = parse_query_request({
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": ""},
                {"role": "user", "content": "show VM performance"},
            ],
        })
        assert request.messages[1].content == ""

    def test_non_object_body(self):
        with pytest.raises(InvalidRequestError):
            parse_query_request(["hi"])

    @pytest.mark.parametrize("method", ["get", "put", "delete"])
    def test_wrong_method(self, make_client, method):
        client, services = make_client()
        response = getattr(client, method)("/api/query")
        assert response.status_code == 405
        assert response.headers["Allow"] == "POST"
        assert response.json()["error"]["message"] == "Method not allowed"
        assert "invalid_method" in metric_names(services)


class TestCompletionFailures:

    def test_rate_limit_is_retried(self, make_client, fake_completion, sleeps):
        fake_completion.outcomes = [
            RateLimitedError("slow down", "completion"),
            RateLimitedError("slow down", "completion"),
            "finally",
        ]
        client, services = make_client()
        response = ask(client, "hello")
        assert response.status_code == 200
        assert response.json()["message"] == "finally"
        assert sleeps.waits == [0.01, 0.02]
        assert metric_names(services).count("completion_rate_limited") == 2

    def test_rate_limit_exhausted(self, make_client, fake_completion, sleeps):
        fake_completion.outcomes = [RateLimitedError("slow down", "completion", retry_after=2)]
        client, _ = make_client()
        response = ask(client, "hello")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "2"
        assert response.json()["error"]["kind"] == "rate_limit"
        assert len(fake_completion.calls) == 3
        assert sleeps.waits == [2, 2]

    def test_auth_error_is_not_retried_and_not_leaked(self, make_client, fake_completion):
        fake_completion.outcomes = [AuthError("completion rejected key abc123", "completion")]
        client, services = make_client()
        response = ask(client, "hello")
        assert response.status_code == 401
        body = response.json()
        assert body["error"]["kind"] == "auth"
        assert "abc123" not in body["error"]["message"]
        assert len(fake_completion.calls) == 1
        assert "request_error" in metric_names(services)

    def test_breaker_opens_and_sheds_load(self, make_client, fake_completion):
        fake_completion.outcomes = [UnknownUpstreamError("boom", "completion")]
        client, services = make_client()
        for _ in range(3):
            assert ask(client, "hello").status_code == 500

        response = ask(client, "hello")
        assert response.status_code == 503
        body = response.json()
        assert body["error"]["kind"] == "circuit_open"
        assert body["retryAfter"] >= 1
        assert response.headers["Retry-After"] == str(body["retryAfter"])
        assert len(fake_completion.calls) == 3
        assert services.breakers["completion"].state.value == "open"


class TestRetryAfterHeader:

    def test_success_has_no_retry_after(self, make_client):
        client, _ = make_client()
        response = ask(client, "hello")
        assert response.status_code == 200
        assert "Retry-After" not in response.headers

    def test_upstream_hint_reaches_the_client(self, make_client, fake_completion):
        fake_completion.outcomes = [RateLimitedError("slow down", "completion", retry_after=2)]
        client, _ = make_client()
        response = ask(client, "hello")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "2"
        assert response.json()["retryAfter"] == 2


class TestRedaction:

    def test_external_backend_gets_redacted_data(self, make_client):
        azure = FakeAzureClient()
        azure.resources["rg1"][0]["tags"] = {"ip": "10.1.2.3"}
        completion = FakeCompletion("ok", external=True)
        client, _ = make_client(azure=azure, completion=completion)
        assert ask(client, "List my resources").status_code == 200
        data_message = completion.calls[0][1]["content"]
        assert "10.1.2.3" not in data_message
        assert "[REDACTED_IP]" in data_message

    def test_local_backend_sees_raw_data(self, make_client):
        azure = FakeAzureClient()
        azure.resources["rg1"][0]["tags"] = {"ip": "10.1.2.3"}
        completion = FakeCompletion("ok", external=False)
        client, _ = make_client(azure=azure, completion=completion)
        ask(client, "List my resources")
        assert "10.1.2.3" in completion.calls[0][1]["content"]


class TestCorrelation:

    def test_header_matches_body_and_metrics(self, make_client):
        client, services = make_client()
        response = ask(client, "hello")
        cid = response.headers["X-Correlation-ID"]
        assert response.json()["correlationId"] == cid
        received = [m for m in services.metrics.all() if m.name == "request_received"][0]
        assert received.tags["correlation_id"] == cid

    def test_ids_differ_per_request(self, make_client):
        client, _ = make_client()
        first = ask(client, "hello").headers["X-Correlation-ID"]
        second = ask(client, "hello").headers["X-Correlation-ID"]
        assert first != second


class TestCompanionRoutes:

    def test_suggestions(self, make_client):
        client, _ = make_client()
        response = client.get("/api/query/suggestions")
        assert response.status_code == 200
        names = [c["name"] for c in response.json()["suggestions"]["categories"]]
        assert names == ["Costs", "Performance", "Resources"]

    def test_metrics_endpoint(self, make_client):
        client, _ = make_client()
        ask(client, "hello")
        response = client.get("/api/metrics", params={"name": "request_"})
        assert response.status_code == 200
        body = response.json()
        assert {m["name"] for m in body["metrics"]} == {"request_received", "request_completed"}
        assert body["stats"]["totalRequests"] == 1
        assert body["stats"]["successRate"] == 1.0

    def test_health(self, make_client):
        client, _ = make_client()
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["breakers"] == {"azure": "closed", "completion": "closed"}
        assert body["config"]["completion_backend"] == "ollama"
