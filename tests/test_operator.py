import json
import threading
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from klausgate.lifecycle import CreateSpec, InstanceNotFoundError
from klausgate.operator import OperatorError, OperatorManager


@contextmanager
def serve(reply):
    """Run a local HTTP server; reply(body) returns (status, payload bytes)."""
    calls = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            calls.append({"path": self.path, "headers": self.headers, "body": body})
            status, payload = reply(body)
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/mcp", calls
    finally:
        server.shutdown()
        server.server_close()


def result_reply(result):
    def reply(_body):
        return 200, json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}).encode()

    return reply


def test_create_sends_bearer_and_tool_call():
    with serve(result_reply({"name": "inst-x", "base_url": "http://inst-x"})) as (url, calls):
        manager = OperatorManager(url, "token")
        ref = manager.create(CreateSpec(name="inst-x"))
    assert ref.name == "inst-x"
    assert ref.base_url == "http://inst-x"
    assert calls[0]["headers"].get("Authorization") == "Bearer token"
    request = json.loads(calls[0]["body"])
    assert request["method"] == "tools/call"
    assert request["params"]["name"] == "create_instance"
    assert request["params"]["arguments"]["name"] == "inst-x"
    assert "metadata" not in request["params"]["arguments"]


def test_create_includes_metadata_when_present():
    with serve(result_reply({"name": "i"})) as (url, calls):
        ref = OperatorManager(url).create(CreateSpec(name="i", metadata={"team": "a"}))
    assert ref.name == "i"
    request = json.loads(calls[0]["body"])
    assert request["params"]["arguments"]["metadata"] == {"team": "a"}


def test_get_not_found_error_code():
    def reply(_body):
        payload = {"jsonrpc": "2.0", "id": 1, "error": {"code": 404, "message": "no such instance"}}
        return 200, json.dumps(payload).encode()

    with serve(reply) as (url, _calls):
        manager = OperatorManager(url, "")
        with pytest.raises(InstanceNotFoundError):
            manager.get("missing")


def test_get_empty_result_is_not_found():
    with serve(result_reply({})) as (url, _calls):
        with pytest.raises(InstanceNotFoundError):
            OperatorManager(url).get("missing")


def test_other_rpc_error_raises_operator_error():
    def reply(_body):
        payload = {"jsonrpc": "2.0", "id": 1, "error": {"code": 500, "message": "boom"}}
        return 200, json.dumps(payload).encode()

    with serve(reply) as (url, _calls):
        with pytest.raises(OperatorError, match="operator get_instance: boom"):
            OperatorManager(url).get("x")


def test_http_status_error_carries_snippet():
    with serve(lambda _body: (500, b"internal trouble")) as (url, _calls):
        with pytest.raises(OperatorError, match="status 500: internal trouble"):
            OperatorManager(url).stop("x")


def test_undecodable_reply():
    with serve(lambda _body: (200, b"not json")) as (url, _calls):
        with pytest.raises(OperatorError, match="decode get_instance"):
            OperatorManager(url).get("x")


def test_list_and_no_authorization_without_token():
    with serve(result_reply([{"name": "a"}, {"name": "b", "status": "ready"}])) as (url, calls):
        refs = OperatorManager(url).list()
    assert [ref.name for ref in refs] == ["a", "b"]
    assert refs[1].status == "ready"
    assert calls[0]["headers"].get("Authorization") is None


def test_rpc_ids_increase():
    def reply(body):
        request = json.loads(body)
        if request["params"]["name"] == "list_instances":
            result = [{"name": "a"}]
        else:
            result = None
        return 200, json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": result}).encode()

    with serve(reply) as (url, calls):
        manager = OperatorManager(url)
        manager.stop("a")
        manager.stop("b")
        refs = manager.list()
    assert [ref.name for ref in refs] == ["a"]
    ids = [json.loads(call["body"])["id"] for call in calls]
    assert ids == [1, 2, 3]
    assert json.loads(calls[1]["body"])["params"] == {
        "name": "stop_instance",
        "arguments": {"name": "b"},
    }


def test_endpoint_required():
    with pytest.raises(ValueError):
        OperatorManager("")