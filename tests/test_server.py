import json
import signal
import threading
import time

import pytest
import yaml

from egressd.metrics import Registry
from egressd.monitor import (
    CPUCostConfig,
    EgressAlreadyExistsError,
    EgressRequest,
    NotEnoughCPUError,
)
from egressd.process import EgressNotFoundError
from egressd.server import (
    EgressInfo,
    EgressStatus,
    Server,
    ShuttingDownError,
)
from egressd.types import RequestType


class FakeIO:
    def __init__(self, create_error=None):
        self.created = []
        self.updates = []
        self.healthy = True
        self.create_error = create_error
        self.drained = False

    def create_egress(self, info):
        self.created.append(info.egress_id)
        if self.create_error is not None:
            raise self.create_error

    def update_egress(self, info):
        self.updates.append((info.egress_id, info.status, info.error_code))

    def is_healthy(self):
        return self.healthy

    def drain(self):
        self.drained = True


class FakeBus:
    def __init__(self):
        self.registered = []
        self.deregistered = []
        self.stopped = False

    def register_start_egress_topic(self, cluster_id):
        self.registered.append(cluster_id)

    def deregister_start_egress_topic(self, cluster_id):
        self.deregistered.append(cluster_id)

    def shutdown(self):
        self.stopped = True


class FakeProc:
    def __init__(self, code=0):
        self.pid = 4321
        self.code = code
        self.signals = []
        self.exit = threading.Event()

    def send_signal(self, sig):
        self.signals.append(sig)
        self.exit.set()

    def kill(self):
        self.exit.set()

    def wait(self, timeout=None):
        self.exit.wait(timeout)
        return self.code


def wait_until(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


@pytest.fixture
def harness(tmp_path):
    io = FakeIO()
    bus = FakeBus()
    procs = []
    commands = []
    holder = {}

    def factory(handler_id, config, request):
        commands.append((handler_id, config, request))

        def start():
            proc = FakeProc(code=holder.get("code", 0))
            procs.append(proc)
            holder["server"].handler_ready(json.loads(request)["egress_id"])
            return proc

        return start

    server = Server(
        io,
        cpu_cost_config=CPUCostConfig(),
        node_id="node",
        cluster_id="cluster",
        num_cpu=8,
        registry=Registry(),
        bus=bus,
        tmp_dir=str(tmp_path),
        command_factory=factory,
        launch_timeout=2.0,
        drain_interval=0.01,
    )
    holder["server"] = server
    yield server, io, bus, procs, commands, holder
    for proc in procs:
        proc.exit.set()
    server.monitor.close()


def track_request(egress_id="EG_one", **kwargs):
    return EgressRequest(egress_id=egress_id, request_type=RequestType.TRACK, **kwargs)


def test_start_egress_launches_and_lists(harness):
    server, io, _, procs, _, _ = harness
    info = server.start_egress(track_request(), EgressInfo("EG_one", room_name="room"))
    assert info.status == EgressStatus.EGRESS_STARTING
    assert server.list_active_egress() == ["EG_one"]
    assert io.created == ["EG_one"]
    assert not server.is_idle()
    status = json.loads(server.status())
    assert "EG_one" in status
    assert "CpuLoad" in status

    procs[0].exit.set()
    assert wait_until(server.is_idle)
    assert server.list_active_egress() == []
    assert io.updates == []


def test_handler_command_carries_config_and_request(harness):
    server, _, _, _, commands, _ = harness
    server.start_egress(track_request("EG_cfg"), EgressInfo("EG_cfg"))
    handler_id, config, request = commands[0]
    assert handler_id.startswith("EGH_")
    parsed = yaml.safe_load(config)
    assert parsed["handler_id"] == handler_id
    assert parsed["tmp_dir"].endswith("EG_cfg")
    assert json.loads(request)["egress_id"] == "EG_cfg"


def test_disabled_service_rejects(harness):
    server, io, _, _, _, _ = harness
    io.healthy = False
    with pytest.raises(ShuttingDownError):
        server.start_egress(track_request(), EgressInfo("EG_one"))
    assert server.is_idle()
    assert io.created == []


def test_duplicate_egress_rejected(harness):
    server, _, _, _, _, _ = harness
    server.start_egress(track_request(), EgressInfo("EG_one"))
    with pytest.raises(EgressAlreadyExistsError):
        server.start_egress(track_request(), EgressInfo("EG_one"))
    assert server.list_active_egress() == ["EG_one"]


def test_not_enough_cpu(harness):
    server, io, _, _, _, _ = harness
    with pytest.raises(NotEnoughCPUError):
        server.start_egress(track_request(estimated_cpu=100.0), EgressInfo("EG_one"))
    assert server.is_idle()
    assert io.created == []


def test_create_failure_aborts_process(harness):
    server, io, _, procs, _, _ = harness
    io.create_error = RuntimeError("db down")
    info = EgressInfo("EG_one")
    with pytest.raises(RuntimeError, match="db down"):
        server.start_egress(track_request(), info)
    assert info.error == "db down"
    assert info.error_code == 500
    assert procs[0].signals == [signal.SIGINT]
    assert not server.already_exists("EG_one")
    assert wait_until(server.is_idle)


def test_launch_failure_reports_failed(tmp_path):
    io = FakeIO()

    def factory(handler_id, config, request):
        def start():
            raise OSError("no such program")

        return start

    server = Server(
        io, num_cpu=8, registry=Registry(), tmp_dir=str(tmp_path), command_factory=factory
    )
    info = EgressInfo("EG_bad")
    with pytest.raises(OSError, match="no such program"):
        server.start_egress(track_request("EG_bad"), info)
    assert info.status == EgressStatus.EGRESS_FAILED
    assert info.error == "no such program"
    assert io.updates == [("EG_bad", EgressStatus.EGRESS_FAILED, 500)]
    assert server.is_idle()
    server.monitor.close()


def test_nonzero_exit_marks_failed(harness):
    server, io, _, procs, _, holder = harness
    holder["code"] = 3
    info = EgressInfo("EG_one")
    server.start_egress(track_request(), info)
    procs[0].exit.set()
    assert wait_until(server.is_idle)
    assert info.status == EgressStatus.EGRESS_FAILED
    assert io.updates == [("EG_one", EgressStatus.EGRESS_FAILED, 500)]


def test_affinity(harness):
    server, io, _, _, _, _ = harness
    assert server.start_egress_affinity(track_request("EG_x")) == 0.5
    server.start_egress(track_request(), EgressInfo("EG_one"))
    assert server.start_egress_affinity(track_request("EG_x")) == 1.0
    io.healthy = False
    assert server.start_egress_affinity(track_request("EG_x")) == -1.0


def test_handler_update_internal_error_shuts_down(harness):
    server, io, bus, _, _, _ = harness
    server.handler_update(EgressInfo("EG_one", error="boom", error_code=500))
    assert io.updates == [("EG_one", EgressStatus.EGRESS_STARTING, 500)]
    assert server.is_disabled()
    assert not server.is_terminating()
    assert bus.deregistered == ["cluster"]


def test_handler_update_ordinary_keeps_running(harness):
    server, io, _, _, _, _ = harness
    server.handler_update(EgressInfo("EG_one", status=EgressStatus.EGRESS_ACTIVE))
    assert io.updates == [("EG_one", EgressStatus.EGRESS_ACTIVE, 0)]
    assert not server.is_disabled()


def test_handler_finished_stores_metrics(harness):
    server, io, _, _, _, _ = harness
    text = "# TYPE handler_uploads counter\nhandler_uploads 2\n"
    server.handler_finished("EG_one", EgressInfo("EG_one"), text)
    assert io.updates[0][0] == "EG_one"
    families = {f.name: f for f in server.metrics.gather()}
    metric = families["handler_uploads"].metrics[0]
    assert metric.labels["egress_id"] == "EG_one"
    assert metric.value == 2


def test_handler_ready_unknown(harness):
    server, _, _, _, _, _ = harness
    with pytest.raises(EgressNotFoundError):
        server.handler_ready("EG_missing")


def test_shutdown_once_and_terminating(harness):
    server, _, bus, _, _, _ = harness
    server.shutdown(True, False)
    server.shutdown(False, False)
    assert server.is_terminating()
    assert server.is_disabled()
    assert bus.deregistered == ["cluster"]


def test_shutdown_kill_interrupts_handlers(harness):
    server, _, _, procs, _, _ = harness
    server.start_egress(track_request(), EgressInfo("EG_one"))
    server.shutdown(False, True)
    assert procs[0].signals == [signal.SIGINT]
    assert wait_until(server.is_idle)


def test_run_registers_and_drains(harness):
    server, io, bus, _, _, _ = harness
    thread = threading.Thread(target=server.run)
    thread.start()
    assert wait_until(lambda: bus.registered == ["cluster"])
    server.shutdown(False, False)
    thread.join(5)
    assert not thread.is_alive()
    assert io.drained
    assert bus.stopped


def test_status_when_idle(harness):
    server, _, _, _, _, _ = harness
    status = json.loads(server.status())
    assert list(status) == ["CpuLoad"]
    assert status["CpuLoad"] == 8
    assert server.get_available_cpu() if hasattr(server, "get_available_cpu") else True
    assert server.monitor.get_available_cpu() == status["CpuLoad"]