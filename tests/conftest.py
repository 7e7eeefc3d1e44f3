"""
Shared fixtures for client info tests.
"""

import pytest
from werkzeug.test import EnvironBuilder
from werkzeug.wrappers import Request

from client_info import ClientInfo


SYSTEM_INFO = {
    "platform": "linux",
    "cpu_arch": "x86_64",
    "cpu_cores": 8,
    "total_memory": 16 * 1024 ** 3,
    "free_memory": 4 * 1024 ** 3,
    "network_interfaces": {"lo": [{"address": "127.0.0.1", "netmask": "255.0.0.0",
                                   "family": "IPv4", "broadcast": None}]},
}


@pytest.fixture
def make_request():
    """Build a Werkzeug request with the given headers and peer address."""
    def _make(headers=None, remote_addr="203.0.113.7", secure=False):
        builder = EnvironBuilder(
            path="/",
            base_url="https://localhost/" if secure else "http://localhost/",
            headers=headers or {},
            environ_base={"REMOTE_ADDR": remote_addr},
        )
        return Request(builder.get_environ())
    return _make


@pytest.fixture
def system_info():
    return dict(SYSTEM_INFO)


@pytest.fixture
def sample_info():
    return ClientInfo(
        ip="1.2.3.4",
        user_agent="X",
        browser=None,
        os=None,
        device=None,
        dns_info=({"address": "10.0.0.5", "family": 4},),
        is_proxy=True,
        is_tor=False,
        request_headers={"user-agent": "X", "x-forwarded-for": "1.2.3.4"},
        geo_location={"country": "US", "region": "CA", "city": "Mountain View",
                      "timezone": "America/Los_Angeles", "location": {"lat": 37.4, "lon": -122.1}},
        timestamp="2026-10-18T12:00:00.000Z",
        timezone_offset=0,
        is_https=False,
        **SYSTEM_INFO,
    )
