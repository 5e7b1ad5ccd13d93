import signal
import sys
from dataclasses import dataclass

import pytest

from egressd.monitor import EgressRequest
from egressd.process import EGRESS_FAILED, EgressNotFoundError, Process, ProcessManager
from egressd.types import RequestType


@dataclass
class Info:
    egress_id: str
    status: str = "EGRESS_STARTING"
    error: str = ""
    error_code: int = 0
    updated_at: int = 0
    ended_at: int = 0


class FakeRunning:
    pid = 4242

    def __init__(self):
        self.signals = []
        self.killed = False
        self.waited = False

    def send_signal(self, sig):
        self.signals.append(sig)

    def kill(self):
        self.killed = True

    def wait(self, timeout=None):
        self.waited = True
        return 0


class FakeClient:
    def __init__(self, metrics="", fail=False):
        self.metrics = metrics
        self.fail = fail

    def get_metrics(self):
        if self.fail:
            raise ConnectionError("gone")
        return self.metrics

    def get_pipeline_dot(self):
        return "digraph {}"

    def get_pprof(self, profile_name, timeout, debug):
        return profile_name.encode()


def make_pm(tmp_path, client=None, timeout=1.0):
    factory = (lambda _dir: client) if client is not None else None
    return ProcessManager(client_factory=factory, tmp_dir=str(tmp_path), launch_timeout=timeout)


def launch_ready(pm, egress_id, handler_id="EGH_1"):
    running = FakeRunning()
    req = EgressRequest(egress_id=egress_id, request_type=RequestType.WEB, request={"url": "x"})
    info = Info(egress_id)

    def start():
        pm.handler_started(egress_id)
        return running

    assert pm.launch(handler_id, req, info, start) is running
    return running, info


def test_launch_registers_and_creates_dir(tmp_path):
    pm = make_pm(tmp_path)
    launch_ready(pm, "EG_a", handler_id="EGH_a")
    assert pm.already_exists("EG_a")
    assert pm.get_active_egress_ids() == ["EG_a"]
    assert (tmp_path / "EGH_a").is_dir()


def test_launch_timeout_kills_process(tmp_path):
    pm = make_pm(tmp_path, timeout=0.05)
    running = FakeRunning()
    req = EgressRequest(egress_id="EG_t", request_type=RequestType.TRACK)
    with pytest.raises(EgressNotFoundError):
        pm.launch("EGH_t", req, Info("EG_t"), lambda: running)
    assert running.killed and running.waited


def test_launch_timeout_real_subprocess(tmp_path):
    pm = make_pm(tmp_path, timeout=0.2)
    req = EgressRequest(egress_id="EG_s", request_type=RequestType.TRACK)
    cmd = [sys.executable, "-c", "import time; time.sleep(30)"]
    with pytest.raises(EgressNotFoundError):
        pm.launch("EGH_s", req, Info("EG_s"), cmd)


def test_handler_started_unknown(tmp_path):
    pm = make_pm(tmp_path)
    with pytest.raises(EgressNotFoundError):
        pm.handler_started("missing")


def test_get_status_maps_requests(tmp_path):
    pm = make_pm(tmp_path)
    launch_ready(pm, "EG_b")
    status = {"CpuLoad": 1.0}
    pm.get_status(status)
    assert status == {"CpuLoad": 1.0, "EG_b": {"url": "x"}}


def test_get_client(tmp_path):
    client = FakeClient()
    pm = make_pm(tmp_path, client=client)
    launch_ready(pm, "EG_c")
    assert pm.get_client("EG_c") is client
    with pytest.raises(EgressNotFoundError):
        pm.get_client("other")


def test_kill_all_sends_sigint_once(tmp_path):
    pm = make_pm(tmp_path)
    running, _ = launch_ready(pm, "EG_d")
    pm.kill_all()
    pm.kill_all()
    assert running.signals == [signal.SIGINT]


def test_abort_process_removes(tmp_path):
    pm = make_pm(tmp_path)
    running, _ = launch_ready(pm, "EG_e")
    pm.abort_process("EG_e", RuntimeError("save failed"))
    assert not pm.already_exists("EG_e")
    assert running.signals == [signal.SIGINT]


def test_kill_process_marks_info_failed(tmp_path):
    pm = make_pm(tmp_path)
    running, info = launch_ready(pm, "EG_f")
    pm.kill_process("EG_f", RuntimeError("cpu exhausted"))
    assert info.status == EGRESS_FAILED
    assert info.error == "cpu exhausted"
    assert info.error_code == 403
    assert info.updated_at == info.ended_at > 0
    assert pm.already_exists("EG_f")
    assert running.signals == [signal.SIGINT]


def test_process_finished_removes_without_signal(tmp_path):
    pm = make_pm(tmp_path)
    running, _ = launch_ready(pm, "EG_g")
    gatherers = pm.get_gatherers()
    pm.process_finished("EG_g")
    assert pm.get_active_egress_ids() == []
    assert gatherers[0].closed.is_set()
    gatherers[0].kill()
    assert running.signals == []


def test_gather_adds_egress_label():
    client = FakeClient(metrics="# TYPE jobs counter\njobs 3\n")
    process = Process("EGH_h", EgressRequest("EG_h", RequestType.TRACK), Info("EG_h"), client=client)
    families = process.gather()
    assert [f.name for f in families] == ["jobs"]
    assert families[0].metrics[0].labels == {"egress_id": "EG_h"}
    assert families[0].metrics[0].value == 3


def test_gather_failure_yields_nothing():
    client = FakeClient(fail=True)
    process = Process("EGH_i", EgressRequest("EG_i", RequestType.TRACK), Info("EG_i"), client=client)
    assert process.gather() == []