"""Tests for the inbound MCP server request handling and stdio loop."""

import io
import json
import logging
import threading
from unittest.mock import patch

import pytest

from flipagent.config import MCPSettings
from flipagent.mcp.base import Tool, ToolResult
from flipagent.mcp.errors import ToolNotFoundError
from flipagent.mcp.security import SecurityConfig
from flipagent.mcp.server import MCPServer
from flipagent.mcp.tools import ToolProvider


class StubProvider(ToolProvider):
    """In-memory provider with a handful of behaviours."""

    def __init__(self):
        self.release = threading.Event()
        self.calls = []

    def list_tools(self):
        return [
            Tool(
                name="flipagent_search",
                description="Search",
                input_schema={
                    "type": "object",
                    "properties": {"q": {"type": "string"}, "limit": {"type": "integer"}},
                    "required": ["q"],
                },
            ),
            Tool(name="flipagent_listing_publish"),
            Tool(name="flipagent_slow"),
            Tool(name="flipagent_boom"),
            Tool(name="flipagent_soft_fail"),
            Tool(name="flipagent_vanishing"),
        ]

    def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if name == "flipagent_slow":
            self.release.wait(5)
            return ToolResult.from_text("late")
        if name == "flipagent_boom":
            raise RuntimeError("kaboom")
        if name == "flipagent_soft_fail":
            return ToolResult.from_text("no stock", is_error=True)
        if name == "flipagent_vanishing":
            raise ToolNotFoundError(name)
        return ToolResult.from_text(json.dumps(arguments, sort_keys=True))


@pytest.fixture
def provider():
    stub = StubProvider()
    yield stub
    stub.release.set()


@pytest.fixture
def make_server(provider, security):
    def _make(security_config=None, **kwargs):
        kwargs.setdefault("settings", MCPSettings(tool_timeout_ms=2000))
        return MCPServer(provider, security_config or security, **kwargs)

    return _make


def _call(server, name, arguments=None, request_id=1):
    params = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return server.handle_request({"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": params})


# -------------------------------------------------------------------- #
# Framing and basic methods
# -------------------------------------------------------------------- #


class TestFraming:
    def test_parse_error(self, make_server):
        response = make_server().handle_line("{not json")
        assert response == {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}

    def test_blank_line_ignored(self, make_server):
        assert make_server().handle_line("   \n") is None

    @pytest.mark.parametrize("frame", [
        {"id": 1, "method": "ping"},
        {"jsonrpc": "1.0", "id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": 1},
        [1, 2, 3],
    ])
    def test_invalid_request(self, make_server, frame):
        response = make_server().handle_line(json.dumps(frame))
        assert response["error"]["code"] == -32600
        assert "Invalid Request" in response["error"]["message"]

    def test_invalid_request_echoes_valid_id(self, make_server):
        response = make_server().handle_line(json.dumps({"id": 7, "method": "ping"}))
        assert response["id"] == 7

    def test_bytes_input(self, make_server):
        response = make_server().handle_line(b'{"jsonrpc":"2.0","id":"a","method":"ping"}\n')
        assert response == {"jsonrpc": "2.0", "id": "a", "result": {}}


class TestMethods:
    def test_initialize(self, make_server):
        response = make_server().handle_line(json.dumps({
            "jsonrpc": "2.0", "id": 1, "method": "initialize",
            "params": {"protocolVersion": "2024-11-05", "clientInfo": {"name": "c", "version": "1"}},
        }))
        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["capabilities"] == {"tools": {}}
        assert result["serverInfo"]["name"] == "flipagent"

    def test_initialized_notification_has_no_response(self, make_server):
        assert make_server().handle_line('{"jsonrpc":"2.0","method":"notifications/initialized"}') is None

    def test_other_notifications_ignored(self, make_server):
        assert make_server().handle_line('{"jsonrpc":"2.0","method":"notifications/cancelled"}') is None

    def test_method_not_found(self, make_server):
        response = make_server().handle_line('{"jsonrpc":"2.0","id":3,"method":"resources/list"}')
        assert response["error"] == {"code": -32601, "message": "Method not found: resources/list"}

    def test_tools_list_unfiltered(self, make_server, provider):
        response = make_server().handle_line('{"jsonrpc":"2.0","id":1,"method":"tools/list"}')
        names = [t["name"] for t in response["result"]["tools"]]
        assert names == [t.name for t in provider.list_tools()]
        assert response["result"]["tools"][0]["inputSchema"]["required"] == ["q"]

    def test_tools_list_filtered_by_profile(self, make_server):
        server = make_server(SecurityConfig(tool_profile="read-only", audit_enabled=False))
        response = server.handle_line('{"jsonrpc":"2.0","id":1,"method":"tools/list"}')
        assert [t["name"] for t in response["result"]["tools"]] == ["flipagent_search"]

    def test_provider_failure_is_internal_error(self, make_server, provider):
        with patch.object(provider, "list_tools", side_effect=RuntimeError("disk gone")):
            response = make_server().handle_line('{"jsonrpc":"2.0","id":1,"method":"tools/list"}')
        assert response["error"] == {"code": -32603, "message": "disk gone"}


# -------------------------------------------------------------------- #
# tools/call pipeline
# -------------------------------------------------------------------- #


class TestCallPipeline:
    def test_success(self, make_server):
        response = _call(make_server(), "flipagent_search", {"q": "lego", "limit": 5})
        assert response["result"] == {"content": [{"type": "text", "text": '{"limit": 5, "q": "lego"}'}]}

    def test_missing_name(self, make_server):
        response = make_server().handle_request(
            {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {}}
        )
        assert response["error"] == {"code": -32602, "message": "Missing tool name"}

    def test_blocked_tool(self, make_server, provider):
        server = make_server(SecurityConfig(blocked_tools=frozenset({"flipagent_search"}), audit_enabled=False))
        response = _call(server, "flipagent_search", {"q": "x"})
        assert response["error"] == {"code": -32600, "message": "Tool not allowed: flipagent_search"}
        assert provider.calls == []

    def test_allow_list_excludes_others(self, make_server):
        server = make_server(SecurityConfig(allowed_tools=frozenset({"flipagent_search"}), audit_enabled=False))
        assert _call(server, "flipagent_search", {"q": "x"})["result"]
        assert _call(server, "flipagent_boom")["error"]["code"] == -32600

    def test_rate_limited_on_third_call(self, make_server):
        server = make_server(SecurityConfig(rate_limit=2, audit_enabled=False))
        assert "result" in _call(server, "flipagent_search", {"q": "a"})
        assert "result" in _call(server, "flipagent_search", {"q": "b"})
        response = _call(server, "flipagent_search", {"q": "c"})
        assert response["error"]["code"] == -32000
        assert response["error"]["message"] == "Rate limited: 2 calls/min exceeded. Retry in 60s"

    def test_injection_rejected(self, make_server, provider):
        response = _call(make_server(), "flipagent_search", {"q": "shoes; rm -rf /"})
        assert response["error"]["code"] == -32602
        assert response["error"]["message"].startswith("Injection detected: q: Command injection")
        assert provider.calls == []

    def test_unknown_tool(self, make_server):
        response = _call(make_server(), "flipagent_missing", {})
        assert response["error"] == {"code": -32602, "message": "Tool not found: flipagent_missing"}

    def test_schema_violation(self, make_server, provider):
        response = _call(make_server(), "flipagent_search", {"limit": "ten"})
        assert response["error"]["code"] == -32602
        message = response["error"]["message"]
        assert message.startswith("Invalid arguments: ")
        assert "$: 'q' is a required property" in message
        assert "$.limit: 'ten' is not of type 'integer'" in message
        assert provider.calls == []

    def test_missing_arguments_treated_as_empty(self, make_server, provider):
        _call(make_server(), "flipagent_listing_publish")
        assert provider.calls == [("flipagent_listing_publish", {})]

    def test_tool_error_result_passed_through(self, make_server):
        response = _call(make_server(), "flipagent_soft_fail", {})
        assert response["result"]["isError"] is True
        assert response["result"]["content"][0]["text"] == "no stock"

    def test_tool_exception_is_internal_error(self, make_server):
        response = _call(make_server(), "flipagent_boom", {})
        assert response["error"] == {"code": -32603, "message": "kaboom"}

    def test_capability_miss_during_call(self, make_server):
        response = _call(make_server(), "flipagent_vanishing", {})
        assert response["error"]["code"] == -32602

    def test_timeout_returns_error_result(self, make_server, provider):
        server = make_server(settings=MCPSettings(tool_timeout_ms=100))
        response = _call(server, "flipagent_slow", {})
        assert response["result"]["isError"] is True
        assert response["result"]["content"][0]["text"] == "Tool execution timed out after 100ms"

    def test_saturated_tool_pool_logged(self, make_server, provider, caplog):
        server = make_server(settings=MCPSettings(tool_timeout_ms=100), max_tool_workers=1)
        _call(server, "flipagent_slow", {})
        with caplog.at_level(logging.WARNING, logger="flipagent.mcp.server"):
            response = _call(server, "flipagent_search", {"q": "x"}, request_id=2)
        assert "Tool pool saturated (1 running, 1 workers)" in caplog.text
        assert response["result"]["isError"] is True
        provider.release.set()
        assert "isError" not in _call(server, "flipagent_search", {"q": "y"}, request_id=3)["result"]


class TestAudit:
    @pytest.fixture
    def audit(self):
        with patch("flipagent.mcp.server.log_audit") as log_audit:
            yield log_audit

    def _records(self, audit):
        return [c.args[0] for c in audit.call_args_list]

    def test_success_audited_with_duration(self, make_server, audit):
        _call(make_server(), "flipagent_search", {"q": "x"})
        (record,) = self._records(audit)
        assert record.tool == "flipagent_search"
        assert record.client_id == "stdio"
        assert record.success is True
        assert record.error is None
        assert record.duration_ms >= 0

    @pytest.mark.parametrize("security_config,name,arguments,error", [
        (SecurityConfig(blocked_tools=frozenset({"flipagent_search"})), "flipagent_search", {"q": "x"}, "blocked"),
        (SecurityConfig(), "flipagent_search", {"q": "../../etc/passwd"}, "injection"),
        (SecurityConfig(), "flipagent_nope", {}, "not_found"),
        (SecurityConfig(), "flipagent_search", {}, "invalid_arguments"),
    ])
    def test_rejections_audited_with_zero_duration(self, make_server, audit, security_config, name, arguments, error):
        _call(make_server(security_config), name, arguments)
        (record,) = self._records(audit)
        assert record.success is False
        assert record.error == error
        assert record.duration_ms == 0

    def test_rate_limit_audited(self, make_server, audit):
        server = make_server(SecurityConfig(rate_limit=1))
        _call(server, "flipagent_search", {"q": "a"})
        _call(server, "flipagent_search", {"q": "b"})
        assert [r.error for r in self._records(audit)] == [None, "rate_limited"]

    def test_error_result_audited_as_failure(self, make_server, audit):
        _call(make_server(), "flipagent_soft_fail", {})
        (record,) = self._records(audit)
        assert record.success is False

    def test_custom_client_id(self, make_server, audit):
        _call(make_server(client_id="desktop"), "flipagent_search", {"q": "x"})
        assert self._records(audit)[0].client_id == "desktop"


# -------------------------------------------------------------------- #
# Stdio loop
# -------------------------------------------------------------------- #


class TestServe:
    def test_round_trip_and_exit_code(self, make_server):
        stdin = io.BytesIO(b"\n".join([
            b'{"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}',
            b'{"jsonrpc":"2.0","method":"notifications/initialized"}',
            b"",
            b'{"jsonrpc":"2.0","id":2,"method":"tools/call","params":{"name":"flipagent_search","arguments":{"q":"x"}}}',
            b"garbage",
            b'{"jsonrpc":"2.0","id":3,"method":"ping"}',
        ]) + b"\n")
        stdout = io.BytesIO()
        assert make_server(stdout=stdout).serve(stdin) == 0

        lines = stdout.getvalue().decode("utf-8").splitlines()
        frames = [json.loads(line) for line in lines]
        assert len(frames) == 4
        by_id = {f["id"]: f for f in frames}
        assert by_id[1]["result"]["protocolVersion"] == "2024-11-05"
        assert by_id[2]["result"]["content"][0]["text"] == '{"q": "x"}'
        assert by_id[3]["result"] == {}
        assert by_id[None]["error"]["code"] == -32700

    def test_slow_call_does_not_block_others(self, make_server, provider):
        stdin = io.BytesIO(
            b'{"jsonrpc":"2.0","id":1,"method":"tools/call","params":{"name":"flipagent_slow"}}\n'
            b'{"jsonrpc":"2.0","id":2,"method":"ping"}\n'
        )
        stdout = io.BytesIO()
        server = make_server(stdout=stdout)
        original_send = server.send
        order = []

        def send(message):
            order.append(message["id"])
            if message["id"] == 2:
                provider.release.set()
            original_send(message)

        server.send = send
        server.serve(stdin)
        assert order == [2, 1]

    def test_empty_input(self, make_server):
        stdout = io.BytesIO()
        assert make_server(stdout=stdout).serve(io.BytesIO(b"")) == 0
        assert stdout.getvalue() == b""
