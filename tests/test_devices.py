"""Device context normalization and User-Agent classification."""

import pytest

from sessionward.service.devices import DeviceContext, classify_user_agent


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (None, "unknown"),
        ("", "unknown"),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "mobile"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "desktop"),
        ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "desktop"),
        ("curl/8.5.0", "unknown"),
    ],
)
def test_classify_user_agent(user_agent, expected):
    assert classify_user_agent(user_agent) == expected


class TestDeviceContext:
    def test_defaults(self):
        ctx = DeviceContext()
        assert ctx.session_hint is None
        assert ctx.resolved_provider() == "local"
        assert ctx.resolved_device_type() == "unknown"
        assert ctx.resolved_location() is None

    def test_client_id_stands_in_for_blank_device_id(self):
        assert DeviceContext(device_id="  ", client_id="web-app").session_hint == "web-app"
        assert DeviceContext(device_id="laptop", client_id="web-app").session_hint == "laptop"

    def test_declared_device_type_wins_over_user_agent(self):
        ctx = DeviceContext(device_type="Mobile", user_agent="Mozilla/5.0 (Windows NT 10.0)")
        assert ctx.resolved_device_type() == "mobile"

    def test_unknown_or_bogus_declaration_falls_back_to_user_agent(self):
        ua = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)"
        assert DeviceContext(device_type="unknown", user_agent=ua).resolved_device_type() == "desktop"
        assert DeviceContext(device_type="toaster", user_agent=ua).resolved_device_type() == "desktop"

    def test_location_and_user_agent_trimmed_and_capped(self):
        ctx = DeviceContext(location="  Porto  ", user_agent="x" * 300, provider=" Google ")
        assert ctx.resolved_location() == "Porto"
        assert len(ctx.resolved_user_agent()) == 255
        assert ctx.resolved_provider() == "google"
        assert DeviceContext(location="   ").resolved_location() is None
