import logging
import string

from werkzeug.test import Client
from werkzeug.wrappers import Response

from klausgate.middleware import (
    REQUEST_ID_HEADER,
    access_log_middleware,
    new_request_id,
    request_id_from_environ,
    request_id_middleware,
)


def _echo_request_id(environ, start_response):
    return Response(request_id_from_environ(environ))(environ, start_response)


def _teapot(environ, start_response):
    return Response("brewing", status=418)(environ, start_response)


def test_new_request_id_is_sixteen_hex_digits():
    first = new_request_id()
    second = new_request_id()
    assert len(first) == 16
    assert set(first) <= set(string.hexdigits.lower())
    assert first != second


def test_request_id_from_environ_empty_when_unset():
    assert request_id_from_environ({}) == ""


def test_generated_request_id_is_echoed():
    response = Client(request_id_middleware(_echo_request_id)).get("/")
    header = response.headers[REQUEST_ID_HEADER]
    assert len(header) == 16
    assert response.get_data(as_text=True) == header


def test_inbound_request_id_is_kept():
    client = Client(request_id_middleware(_echo_request_id))
    response = client.get("/", headers={REQUEST_ID_HEADER: "abc"})
    assert response.headers[REQUEST_ID_HEADER] == "abc"
    assert response.get_data(as_text=True) == "abc"


def test_handler_header_wins():
    def own_id(environ, start_response):
        return Response("x", headers={REQUEST_ID_HEADER: "mine"})(environ, start_response)

    response = Client(request_id_middleware(own_id)).get("/", headers={REQUEST_ID_HEADER: "abc"})
    assert response.headers.getlist(REQUEST_ID_HEADER) == ["mine"]


def test_access_log_emits_one_record(caplog):
    logger = logging.getLogger("test.access")
    caplog.set_level(logging.INFO, logger="test.access")
    app = request_id_middleware(access_log_middleware(_teapot, logger))
    response = Client(app).get("/brew", headers={REQUEST_ID_HEADER: "abc"}, buffered=True)
    records = [r for r in caplog.records if r.name == "test.access"]
    assert len(records) == 1
    record = records[0]
    assert response.status_code == 418
    assert record.status == 418
    assert record.method == "GET"
    assert record.path == "/brew"
    assert record.request_id == "abc"
    assert record.duration >= 0
    assert "status=418" in record.getMessage()