from dataclasses import dataclass

import pytest

from egressd.debug import DebugService, get_error_code
from egressd.monitor import EgressRequest
from egressd.process import EgressNotFoundError, ProcessManager
from egressd.types import EgressError, RequestType


@dataclass
class Info:
    egress_id: str


class Running:
    pid = 1

    def send_signal(self, sig):
        pass

    def kill(self):
        pass

    def wait(self, timeout=None):
        return 0


class Client:
    def get_metrics(self):
        return ""

    def get_pipeline_dot(self):
        return "digraph pipeline {}"

    def get_pprof(self, profile_name, timeout, debug):
        if profile_name == "bad":
            raise EgressError("unavailable", status=503)
        return f"{profile_name}:{timeout}:{debug}".encode()


@pytest.fixture
def service(tmp_path):
    pm = ProcessManager(client_factory=lambda _d: Client(), tmp_dir=str(tmp_path))

    def start():
        pm.handler_started("EG_1")
        return Running()

    pm.launch("EGH_1", EgressRequest("EG_1", RequestType.WEB), Info("EG_1"), start)
    return DebugService(pm)


def test_get_error_code():
    assert get_error_code(None) == 200
    assert get_error_code(EgressNotFoundError()) == 404
    assert get_error_code(ValueError("x")) == 500


def test_dot_file(service):
    assert service.get_gst_pipeline_dot_file("EG_1") == "digraph pipeline {}"
    status, _, body = service.handle_request("/gst_pipeline/EG_1")
    assert status == 200
    assert body == b"digraph pipeline {}"


def test_dot_file_unknown_egress(service):
    with pytest.raises(EgressNotFoundError):
        service.get_gst_pipeline_dot_file("nope")
    status, _, _ = service.handle_request("/gst_pipeline/nope")
    assert status == 404


def test_malformed_url(service):
    status, _, body = service.handle_request("/gst_pipeline")
    assert status == 404
    assert body == b"malformed url\n"
    status, _, body = service.handle_request("/pprof/a/b/c")
    assert (status, body) == (404, b"malformed url\n")


def test_handler_pprof_passes_params(service):
    status, content_type, body = service.handle_request(
        "/pprof/EG_1/heap", {"timeout": "5", "debug": "x"}
    )
    assert status == 200
    assert content_type == "application/octet-stream"
    assert body == b"heap:5:0"


def test_handler_pprof_errors(service):
    assert service.handle_request("/pprof/other/heap")[2] == b"handler not found\n"
    assert service.handle_request("/pprof/EG_1/bad")[0] == 503


def test_service_profile(service):
    status, _, body = service.handle_request("/pprof/threads")
    assert status == 200
    assert b"MainThread" in body
    assert service.handle_request("/pprof/unknown")[0] == 404


def test_disabled_handlers(service):
    assert service.start_debug_handlers(0) is None