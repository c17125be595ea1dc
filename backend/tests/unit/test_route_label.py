"""Request metric labels use the full route template."""
from types import SimpleNamespace

import pytest
from starlette.requests import Request

from qssun.main import _route_label


def _request(route_path=None, root_path="", app_root_path="", path="/api/quotations/ORG-1"):
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "root_path": root_path,
        "app_root_path": app_root_path,
        "query_string": b"",
        "headers": [],
        "server": ("testserver", 80),
        "scheme": "http",
    }
    if route_path is not None:
        scope["route"] = SimpleNamespace(path=route_path)
    return Request(scope)


@pytest.mark.unit
def test_flattened_route_keeps_its_template():
    assert _route_label(_request("/api/quotations/{identifier}")) == "/api/quotations/{identifier}"


@pytest.mark.unit
def test_route_matched_below_a_mount_gets_the_prefix():
    request = _request("/quotations/{identifier}", root_path="/api")
    assert _route_label(request) == "/api/quotations/{identifier}"


@pytest.mark.unit
def test_proxy_root_path_is_not_part_of_the_label():
    request = _request("/quotations/{identifier}", root_path="/svc/api", app_root_path="/svc")
    assert _route_label(request) == "/api/quotations/{identifier}"


@pytest.mark.unit
def test_unmatched_request_falls_back_to_raw_path():
    assert _route_label(_request(path="/nowhere")) == "/nowhere"
