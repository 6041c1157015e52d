"""Tests for the inbound server security layer."""

import json
from unittest.mock import patch

import pytest

from flipagent.mcp.base import Tool
from flipagent.mcp.security import (
    AuditRecord,
    InjectionDetector,
    RateLimiter,
    SecurityConfig,
    audit_logger,
    check_rate_limit,
    filter_tools,
    is_tool_allowed,
    load_security_config,
    log_audit,
    sanitize_tool_args,
)


class FakeClock:
    """Millisecond clock."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


# -------------------------------------------------------------------- #
# Configuration
# -------------------------------------------------------------------- #


class TestLoadSecurityConfig:
    def test_defaults(self, tmp_path):
        config = load_security_config(environ={}, path=tmp_path / "absent.yaml")
        assert config.allowed_tools == frozenset()
        assert config.blocked_tools == frozenset()
        assert config.rate_limit == 60
        assert config.audit_enabled is True
        assert config.tool_profile == "full"
        assert not config.has_filters

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "sec.yaml"
        path.write_text(
            "allowed_tools: [flipagent_a, flipagent_b]\n"
            "blocked_tools: flipagent_c\n"
            "rate_limit: 5\n"
            "audit: false\n"
            "tool_profile: sourcing\n",
            encoding="utf-8",
        )
        config = load_security_config(environ={}, path=path)
        assert config.allowed_tools == {"flipagent_a", "flipagent_b"}
        assert config.blocked_tools == {"flipagent_c"}
        assert config.rate_limit == 5
        assert config.audit_enabled is False
        assert config.tool_profile == "sourcing"

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "sec.yaml"
        path.write_text("rate_limit: 5\naudit: false\n", encoding="utf-8")
        env = {
            "FLIPAGENT_MCP_ALLOWED_TOOLS": " a, b ,,",
            "FLIPAGENT_MCP_BLOCKED_TOOLS": "c",
            "FLIPAGENT_MCP_RATE_LIMIT": "9",
            "FLIPAGENT_MCP_AUDIT": "TRUE",
            "FLIPAGENT_MCP_TOOL_PROFILE": "read-only",
        }
        config = load_security_config(environ=env, path=path)
        assert config.allowed_tools == {"a", "b"}
        assert config.blocked_tools == {"c"}
        assert config.rate_limit == 9
        assert config.audit_enabled is True
        assert config.tool_profile == "read-only"

    def test_audit_disabled_only_by_false(self, tmp_path):
        absent = tmp_path / "none.yaml"
        assert load_security_config(environ={"FLIPAGENT_MCP_AUDIT": "false"}, path=absent).audit_enabled is False
        assert load_security_config(environ={"FLIPAGENT_MCP_AUDIT": "0"}, path=absent).audit_enabled is True

    def test_security_file_from_environment(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("blocked_tools: [x]\n", encoding="utf-8")
        config = load_security_config(environ={"FLIPAGENT_MCP_SECURITY_FILE": str(path)})
        assert config.blocked_tools == {"x"}

    @pytest.mark.parametrize("raw", ["zero", "0", "-3"])
    def test_invalid_rate_limit_falls_back(self, tmp_path, raw):
        config = load_security_config(environ={"FLIPAGENT_MCP_RATE_LIMIT": raw}, path=tmp_path / "x.yaml")
        assert config.rate_limit == 60

    def test_malformed_yaml_ignored(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("allowed_tools: [unclosed\n", encoding="utf-8")
        assert load_security_config(environ={}, path=path).allowed_tools == frozenset()

    def test_non_mapping_yaml_ignored(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        assert load_security_config(environ={}, path=path).rate_limit == 60

    def test_each_config_owns_its_limiter(self):
        assert SecurityConfig().rate_limiter is not SecurityConfig().rate_limiter


# -------------------------------------------------------------------- #
# Allow-listing
# -------------------------------------------------------------------- #


class TestToolAllowed:
    def test_everything_allowed_by_default(self):
        assert is_tool_allowed("anything", SecurityConfig())

    def test_blocked_beats_allowed(self):
        config = SecurityConfig(allowed_tools=frozenset({"t"}), blocked_tools=frozenset({"t"}))
        assert not is_tool_allowed("t", config)

    def test_allow_list_is_exclusive(self):
        config = SecurityConfig(allowed_tools=frozenset({"t"}))
        assert is_tool_allowed("t", config)
        assert not is_tool_allowed("u", config)

    def test_allow_list_overrides_profile(self):
        config = SecurityConfig(allowed_tools=frozenset({"custom_tool"}), tool_profile="read-only")
        assert is_tool_allowed("custom_tool", config)
        assert not is_tool_allowed("flipagent_search_items", config)

    @pytest.mark.parametrize("profile,name,allowed", [
        ("read-only", "flipagent_sourcing_scan", True),
        ("read-only", "flipagent_analytics_report", True),
        ("read-only", "flipagent_listing_create", False),
        ("sourcing", "flipagent_listing_create", True),
        ("sourcing", "flipagent_fulfillment_ship", True),
        ("sourcing", "other_tool", False),
        ("full", "other_tool", True),
        ("unknown-profile", "other_tool", True),
    ])
    def test_profiles(self, profile, name, allowed):
        assert is_tool_allowed(name, SecurityConfig(tool_profile=profile)) is allowed

    def test_filter_returns_same_list_without_filters(self):
        tools = [Tool(name="a"), Tool(name="b")]
        assert filter_tools(tools, SecurityConfig()) is tools

    def test_filter_applies_blocks(self):
        tools = [Tool(name="a"), Tool(name="b")]
        filtered = filter_tools(tools, SecurityConfig(blocked_tools=frozenset({"a"})))
        assert [t.name for t in filtered] == ["b"]

    def test_filter_custom_name_accessor(self):
        rows = [{"id": "a"}, {"id": "b"}]
        config = SecurityConfig(allowed_tools=frozenset({"b"}))
        assert filter_tools(rows, config, name=lambda r: r["id"]) == [{"id": "b"}]


# -------------------------------------------------------------------- #
# Rate limiting
# -------------------------------------------------------------------- #


class TestRateLimiter:
    def test_window_and_remaining(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=3, window_ms=60_000, clock=clock)
        assert [limiter.check("c").remaining for _ in range(3)] == [2, 1, 0]
        denied = limiter.check("c")
        assert not denied.allowed
        assert denied.reset_in_ms == 60_000

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock)
        assert limiter.check("c").allowed
        clock.now += 999
        assert not limiter.check("c").allowed
        clock.now += 1
        assert limiter.check("c").allowed

    def test_keys_independent(self):
        limiter = RateLimiter(max_requests=1, clock=FakeClock())
        assert limiter.check("a").allowed
        assert limiter.check("b").allowed
        assert not limiter.check("a").allowed

    def test_key_table_bounded_lru(self):
        limiter = RateLimiter(max_requests=1, max_keys=2, clock=FakeClock())
        limiter.check("a")
        limiter.check("b")
        limiter.check("c")
        assert len(limiter) == 2
        # "a" was evicted, so its budget is fresh again
        assert limiter.check("a").allowed

    def test_reset_and_cleanup(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_ms=1000, clock=clock)
        limiter.check("a")
        limiter.reset("a")
        assert limiter.check("a").allowed
        clock.now += 5000
        limiter.cleanup()
        assert len(limiter) == 0

    def test_check_rate_limit_message(self):
        config = SecurityConfig(rate_limit=1)
        config.rate_limiter = RateLimiter(max_requests=1, clock=FakeClock())
        assert check_rate_limit("stdio", config) is None
        assert check_rate_limit("stdio", config) == "Rate limited: 1 calls/min exceeded. Retry in 60s"


# -------------------------------------------------------------------- #
# Injection screening
# -------------------------------------------------------------------- #


class TestInjection:
    @pytest.mark.parametrize("text,threat", [
        ("' OR '1'='1", "SQL injection"),
        ("x; DROP TABLE users", "SQL injection"),
        ("1 UNION ALL SELECT password", "SQL injection"),
        ("item; rm -rf /", "Command injection"),
        ("$(whoami)", "Command injection"),
        ("`id`", "Command injection"),
        ("a | curl evil", "Command injection"),
        ("<script>alert(1)</script>", "XSS"),
        ("javascript:void(0)", "XSS"),
        ('<img onerror="x">', "XSS"),
        ("../../etc/passwd", "Path traversal"),
        ("..\\windows", "Path traversal"),
    ])
    def test_detects(self, text, threat):
        assert threat in InjectionDetector.detect(text)

    @pytest.mark.parametrize("text", ["vintage lego set", "price <= 20", "Nike Air Max 90, size 10"])
    def test_clean(self, text):
        assert InjectionDetector.detect(text) == []

    def test_nested_paths_reported(self):
        message = sanitize_tool_args({
            "query": "fine",
            "filters": {"brand": "<script>x</script>"},
            "tags": ["ok", "../secret"],
        })
        assert message == "Injection detected: filters.brand: XSS; tags[1]: Path traversal"

    def test_non_strings_ignored(self):
        assert sanitize_tool_args({"n": 5, "flag": True, "none": None}) is None

    def test_empty(self):
        assert sanitize_tool_args({}) is None


# -------------------------------------------------------------------- #
# Audit
# -------------------------------------------------------------------- #


class TestAudit:
    def test_record_shape(self):
        record = AuditRecord("t", "stdio", 1700000000000, 12, False, "blocked")
        assert record.to_dict() == {
            "level": "info",
            "time": 1700000000000,
            "audit": True,
            "tool": "t",
            "client": "stdio",
            "durationMs": 12,
            "success": False,
            "error": "blocked",
        }

    def test_error_omitted_on_success(self):
        assert "error" not in AuditRecord("t", "c", 0, 0, True).to_dict()

    def test_log_audit_emits_compact_json(self):
        with patch.object(audit_logger, "info") as info:
            log_audit(AuditRecord("t", "c", 5, 1, True), SecurityConfig())
        (line,), _ = info.call_args
        assert " " not in line
        assert json.loads(line)["tool"] == "t"

    def test_disabled_audit_writes_nothing(self):
        with patch.object(audit_logger, "info") as info:
            log_audit(AuditRecord("t", "c", 5, 1, True), SecurityConfig(audit_enabled=False))
        info.assert_not_called()

    def test_audit_logger_isolated_from_root(self):
        assert audit_logger.propagate is False
        assert audit_logger.handlers
