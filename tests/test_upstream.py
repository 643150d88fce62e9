import pytest

from klausgate.lifecycle import InstanceRef
from klausgate.upstream import INSTANCE_HEADER, OutgoingRequest, parse_upstream


def test_apply():
    ag = parse_upstream("http://agentgateway:8080/prefix")
    assert ag is not None
    req = OutgoingRequest("POST", "http://upstream.invalid/v1/chat/completions")
    ag.apply(req, InstanceRef(name="i1"))
    assert req.url == "http://agentgateway:8080/prefix/v1/chat/completions"
    assert req.headers[INSTANCE_HEADER] == "i1"
    assert req.headers["x-klaus-instance"] == "i1"


def test_empty_is_direct():
    assert parse_upstream("") is None
    assert parse_upstream("   ") is None


def test_apply_without_base_path_keeps_path_and_query():
    ag = parse_upstream("https://ag.example.com/")
    req = OutgoingRequest("GET", "http://upstream.invalid/mcp?x=1")
    ag.apply(req, InstanceRef(name="i2"))
    assert req.url == "https://ag.example.com/mcp?x=1"
    assert req.headers[INSTANCE_HEADER] == "i2"


def test_url_returns_stripped_base():
    ag = parse_upstream("  http://agentgateway:8080  ")
    assert ag.url() == "http://agentgateway:8080"


def test_invalid_url_raises():
    with pytest.raises(ValueError):
        parse_upstream("http://[::1")