"""Tests for the violation report rate limiter."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from starlette.requests import Request

from csp_manager.middleware.pipeline import RequestContext
from csp_manager.middleware.rate_limiter import ReportRateLimiter, is_report_path


def _mock_redis(current_count, eval_error=None):
    """Create a mock Redis for the atomic Lua rate-limit script.

    The Lua script returns [current_count, was_added (1 if under limit, 0 if over)].
    """
    calls = []

    async def _eval(script, num_keys, *args):
        calls.append(args)
        if eval_error:
            raise eval_error
        # args: key, window_start, now, max_requests_str, member, ttl
        limit = int(args[3])
        if current_count < limit:
            return [current_count, 1]
        return [current_count, 0]

    mock = MagicMock()
    mock.eval = _eval
    mock.calls = calls
    return mock


def _make_request(path: str = "/csp/v1/report/", method: str = "POST", client_host: str = "127.0.0.1") -> Request:
    """Build a minimal Starlette Request."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [],
        "root_path": "",
        "server": ("localhost", 8080),
        "client": (client_host, 12345),
    }
    return Request(scope)


class TestIsReportPath:
    def test_with_and_without_slash(self):
        assert is_report_path("/csp/v1/report/")
        assert is_report_path("/csp/v1/report")

    def test_other_paths(self):
        assert not is_report_path("/csp/v1/policy")
        assert not is_report_path("/")

    def test_custom_path_keeps_default(self, monkeypatch):
        monkeypatch.setenv("CSP_REPORT_PATH", "/violations/")
        assert is_report_path("/violations/")
        assert is_report_path("/violations")
        assert is_report_path("/csp/v1/report/")
        assert is_report_path("/csp/v1/report")


class TestReportRateLimiter:
    @pytest.mark.asyncio
    async def test_default_path_limited_with_custom_path(self, monkeypatch):
        monkeypatch.setenv("CSP_REPORT_PATH", "/violations/")
        redis = _mock_redis(current_count=100)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(_make_request("/csp/v1/report/"), RequestContext())
        assert result.status_code == 429

    @pytest.mark.asyncio
    async def test_allows_under_limit(self):
        redis = _mock_redis(current_count=9)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(_make_request(), RequestContext())
        assert result is None

    @pytest.mark.asyncio
    async def test_returns_429_when_exceeded(self):
        redis = _mock_redis(current_count=100)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(_make_request(), RequestContext())
        assert result is not None
        assert result.status_code == 429
        assert result.headers["Retry-After"] == "60"
        assert b"Rate limit exceeded" in result.body

    @pytest.mark.asyncio
    async def test_limit_from_settings(self, monkeypatch):
        monkeypatch.setenv("CSP_REPORT_RATE_LIMIT_MAX", "5")
        redis = _mock_redis(current_count=5)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(_make_request(), RequestContext())
        assert result.status_code == 429

    @pytest.mark.asyncio
    async def test_keyed_by_client_ip(self):
        redis = _mock_redis(current_count=0)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            await ReportRateLimiter().process_request(
                _make_request(client_host="203.0.113.9"), RequestContext()
            )
        assert redis.calls[0][0] == "csp:reports:203.0.113.9"

    @pytest.mark.asyncio
    async def test_page_requests_not_counted(self):
        redis = _mock_redis(current_count=1000)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(
                _make_request(path="/checkout", method="GET"), RequestContext()
            )
        assert result is None
        assert redis.calls == []

    @pytest.mark.asyncio
    async def test_get_on_report_path_not_counted(self):
        redis = _mock_redis(current_count=1000)
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(
                _make_request(method="GET"), RequestContext()
            )
        assert result is None


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_no_redis(self):
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=None):
            result = await ReportRateLimiter().process_request(_make_request(), RequestContext())
        assert result is None

    @pytest.mark.asyncio
    async def test_no_redis_logs_warning(self):
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=None), \
                patch("csp_manager.middleware.rate_limiter.logger") as mock_logger:
            await ReportRateLimiter().process_request(_make_request(), RequestContext())
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "report_rate_limit_skipped"

    @pytest.mark.asyncio
    async def test_redis_error(self):
        redis = _mock_redis(current_count=0, eval_error=ConnectionError("down"))
        with patch("csp_manager.middleware.rate_limiter.get_redis", return_value=redis):
            result = await ReportRateLimiter().process_request(_make_request(), RequestContext())
        assert result is None
