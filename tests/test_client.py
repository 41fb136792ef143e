"""Unit tests for the request executor: classification, retries, errors."""

import http.client
import io
import json
import urllib.error
from unittest import mock

import pytest
from conftest import ScriptedClient, response

from atl_cli.core.client import (
    APIClient,
    ConfigurationError,
    HttpError,
    TransportError,
    classify,
    parse_retry_after,
)
from atl_cli.core.provision import provision
from atl_cli.core.types import CreateCall, CreationResult, Failure, Request, ResourceSpec, Success, Throttled


class FakeResponse:
    """Minimal stand-in for the object urlopen returns."""

    def __init__(self, status: int, body: str | bytes, headers: dict[str, str] | None = None):
        self.status = status
        self._body = body if isinstance(body, bytes) else body.encode("utf-8")
        self.headers = headers or {}

    def read(self) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def http_error(code: int, body: str = "", headers: dict[str, str] | None = None) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://x", code, "error", headers or {}, io.BytesIO(body.encode("utf-8")))


def build_post(spec: ResourceSpec, parent: CreationResult | None) -> CreateCall:
    return CreateCall(create=Request("POST", "/items", {"name": spec.key}))


# =============================================================================
# Classification
# =============================================================================


class TestClassify:
    def test_json_success(self):
        assert classify(response(201, {"id": "1"})) == Success({"id": "1"})

    def test_non_json_success_is_returned_verbatim(self):
        assert classify(response(200, "OK, created")) == Success("OK, created")

    def test_empty_success(self):
        assert classify(response(204, "")) == Success({"success": True})

    def test_throttled_reads_retry_after(self):
        outcome = classify(response(429, "slow down", {"retry-after": "2"}))
        assert outcome == Throttled(2.0, "slow down")

    def test_throttled_without_header_uses_default(self):
        assert classify(response(429, "")).retry_after == 5.0

    def test_failure(self):
        assert classify(response(500, "boom")) == Failure(500, "boom")

    @pytest.mark.parametrize("value", [None, "", "soon", "-3", "inf", "Wed, 21 Oct 2015 07:28:00 GMT"])
    def test_unusable_retry_after_falls_back(self, value):
        assert parse_retry_after(value) == 5.0

    def test_fractional_retry_after(self):
        assert parse_retry_after(" 1.5 ") == 1.5


# =============================================================================
# Retry behaviour
# =============================================================================


class TestExecute:
    def test_success_first_try(self):
        client = ScriptedClient([response(200, {"id": "10"})])
        assert client.execute(Request("GET", "/x")) == {"id": "10"}
        assert client.sleeps == []

    def test_throttled_within_budget_eventually_succeeds(self):
        client = ScriptedClient(
            [
                response(429, "", {"Retry-After": "1"}),
                response(429, "", {"Retry-After": "2"}),
                response(200, {"ok": True}),
            ]
        )
        assert client.execute(Request("POST", "/x", {"a": 1})) == {"ok": True}
        assert client.sleeps == [1.0, 2.0]
        assert len(client.calls) == 3
        # Identical request each time
        assert {(c["method"], c["path"], json.dumps(c["body"])) for c in client.calls} == {("POST", "/x", '{"a": 1}')}

    def test_throttled_beyond_budget_raises_once(self):
        client = ScriptedClient([response(429, "limit", {"Retry-After": "0"}) for _ in range(10)])
        with pytest.raises(HttpError) as exc:
            client.execute(Request("GET", "/x", retries=3))
        assert exc.value.status == 429
        assert len(client.calls) == 4
        assert client.sleeps == [0.0, 0.0, 0.0]

    def test_zero_budget_never_sleeps(self):
        client = ScriptedClient([response(429, "limit")])
        with pytest.raises(HttpError):
            client.execute(Request("GET", "/x", retries=0))
        assert client.sleeps == []

    def test_budget_is_per_request(self):
        client = ScriptedClient(
            [
                response(429, ""),
                response(200, {"n": 1}),
                response(429, ""),
                response(429, ""),
                response(200, {"n": 2}),
            ]
        )
        assert client.execute(Request("GET", "/a", retries=2)) == {"n": 1}
        assert client.execute(Request("GET", "/b", retries=2)) == {"n": 2}
        assert client.sleeps == [5.0, 5.0, 5.0]

    def test_other_errors_are_not_retried(self):
        client = ScriptedClient([response(500, "x" * 2000)])
        with pytest.raises(HttpError) as exc:
            client.execute(Request("GET", "/x"))
        assert exc.value.status == 500
        assert len(exc.value.body) == 500
        assert len(client.calls) == 1

    def test_transport_error_is_not_retried(self, connection_refused):
        client = ScriptedClient([connection_refused, response(200, {})])
        with pytest.raises(TransportError):
            client.execute(Request("GET", "/x"))
        assert len(client.calls) == 1


class TestConflictFlag:
    def test_409_is_conflict(self):
        assert HttpError(409, "").conflict

    def test_message_text_is_conflict(self):
        assert HttpError(400, '{"message": "A page with this title already exists"}').conflict

    def test_plain_400_is_not_conflict(self):
        assert not HttpError(400, "bad request").conflict

    def test_details_pull_jira_errors(self):
        error = HttpError(400, json.dumps({"errorMessages": ["nope"], "errors": {"summary": "required"}}))
        assert error.to_dict()["details"] == {"errorMessages": ["nope"], "errors": {"summary": "required"}}
        assert error.to_dict()["status"] == 400


# =============================================================================
# Transport (urlopen)
# =============================================================================


class TestSend:
    def test_auth_and_json_headers(self):
        client = APIClient("https://acme.atlassian.net/", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", return_value=FakeResponse(200, '{"id": 1}')) as urlopen:
            assert client.get("/rest/api/3/myself") == {"id": 1}

        req = urlopen.call_args.args[0]
        assert req.full_url == "https://acme.atlassian.net/rest/api/3/myself"
        assert req.get_header("Authorization") == "Basic dG9rZW4="
        assert req.get_header("Accept") == "application/json"
        assert req.get_method() == "GET"

    def test_query_params_drop_none(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", return_value=FakeResponse(200, "{}")) as urlopen:
            client.get("/wiki/rest/api/content", {"spaceKey": "ENG", "title": "A B", "expand": None})
        assert urlopen.call_args.args[0].full_url.endswith("/wiki/rest/api/content?spaceKey=ENG&title=A+B")

    def test_post_body_is_json(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", return_value=FakeResponse(201, '{"id": "5"}')) as urlopen:
            client.post("/x", [{"name": "a"}])
        assert json.loads(urlopen.call_args.args[0].data) == [{"name": "a"}]

    def test_http_error_is_returned_not_raised(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        error = http_error(429, "busy", {"Retry-After": "7"})
        with mock.patch("urllib.request.urlopen", side_effect=error):
            raw = client.send("GET", "/x")
        assert raw.status == 429
        assert raw.text == "busy"
        assert raw.header("retry-after") == "7"

    def test_429_then_success_over_urlopen(self):
        sleeps = []
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=", sleep=sleeps.append)
        side_effect = [http_error(429, "", {"Retry-After": "3"}), FakeResponse(200, '{"ok": 1}')]
        with mock.patch("urllib.request.urlopen", side_effect=side_effect):
            assert client.get("/x") == {"ok": 1}
        assert sleeps == [3.0]

    def test_url_error_becomes_transport_error(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError("Name or service not known")):
            with pytest.raises(TransportError, match="Connection error"):
                client.get("/x")

    def test_timeout_becomes_transport_error(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=", timeout=3)
        with mock.patch("urllib.request.urlopen", side_effect=TimeoutError()):
            with pytest.raises(TransportError, match="timed out after 3 seconds"):
                client.get("/x")

    def test_undecodable_success_body_is_replaced_not_raised(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", return_value=FakeResponse(200, b"\xff\xfe ok")):
            raw = client.send("GET", "/x")
        assert raw.status == 200
        assert "\ufffd" in raw.text
        assert raw.text.endswith(" ok")

    def test_undecodable_body_does_not_stop_provisioning(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        side_effect = [FakeResponse(201, b"\xff"), FakeResponse(201, '{"id": "2"}')]
        with mock.patch("urllib.request.urlopen", side_effect=side_effect):
            report = provision(client, ResourceSpec.forest([{"name": "A"}, {"name": "B"}]), build_post)
        assert report.ok
        assert [r.key for r in report.created] == ["A", "B"]

    @pytest.mark.parametrize(
        "error",
        [http.client.IncompleteRead(b"{"), http.client.RemoteDisconnected("closed"), OSError(104, "reset")],
        ids=["incomplete-read", "remote-disconnected", "os-error"],
    )
    def test_broken_connection_becomes_transport_error(self, error):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", side_effect=error):
            with pytest.raises(TransportError, match="Connection error") as excinfo:
                client.get("/x")
        assert excinfo.value.cause is error

    def test_truncated_body_becomes_transport_error(self):
        class TruncatedResponse(FakeResponse):
            def read(self) -> bytes:
                raise http.client.IncompleteRead(b'{"id"', 10)

        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", return_value=TruncatedResponse(200, "")):
            with pytest.raises(TransportError, match="IncompleteRead"):
                client.get("/x")

    def test_unreadable_error_body_keeps_status(self):
        error = http_error(500)
        error.read = mock.Mock(side_effect=http.client.IncompleteRead(b""))
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        with mock.patch("urllib.request.urlopen", side_effect=error):
            raw = client.send("GET", "/x")
        assert (raw.status, raw.text) == (500, "")

    def test_broken_connection_fails_one_node_only(self):
        client = APIClient("https://acme.atlassian.net", "dG9rZW4=")
        side_effect = [http.client.IncompleteRead(b"{"), FakeResponse(201, '{"id": "2"}')]
        with mock.patch("urllib.request.urlopen", side_effect=side_effect):
            report = provision(client, ResourceSpec.forest([{"name": "A"}, {"name": "B"}]), build_post)
        assert [f.key for f in report.failed] == ["A"]
        assert "IncompleteRead" in report.failed[0].message
        assert [r.id for r in report.created] == ["2"]

    def test_missing_auth_fails_before_any_call(self):
        client = APIClient("https://acme.atlassian.net", "")
        with mock.patch("urllib.request.urlopen") as urlopen:
            with pytest.raises(ConfigurationError):
                client.get("/x")
        urlopen.assert_not_called()


class TestPaginate:
    def test_follows_start_at_until_last(self):
        client = ScriptedClient(
            [
                response(200, {"values": [{"key": "A"}, {"key": "B"}], "total": 3, "isLast": False}),
                response(200, {"values": [{"key": "C"}], "total": 3, "isLast": True}),
            ]
        )
        keys = [p["key"] for p in client.paginate("/rest/api/3/project/search", page_size=2)]
        assert keys == ["A", "B", "C"]
        assert "startAt=2" in client.calls[1]["path"]
