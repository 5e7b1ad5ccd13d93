"""The egress service: admits start requests, launches handlers and relays their updates."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional, Protocol

import yaml

from egressd.debug import DebugService
from egressd.metrics import DEFAULT_REGISTRY, MetricsService, Registry
from egressd.monitor import CPUCostConfig, EgressAlreadyExistsError, EgressRequest, Monitor
from egressd.process import (
    DEFAULT_TMP_DIR,
    LAUNCH_TIMEOUT,
    ClientFactory,
    Command,
    ProcessManager,
    RunningProcess,
)
from egressd.types import EgressError

log = logging.getLogger(__name__)

VERSION = "1.9.0"
HANDLER_PREFIX = "EGH_"
_INTERNAL_ERROR = int(HTTPStatus.INTERNAL_SERVER_ERROR)


class EgressStatus(str, Enum):
    EGRESS_STARTING = "EGRESS_STARTING"
    EGRESS_ACTIVE = "EGRESS_ACTIVE"
    EGRESS_ENDING = "EGRESS_ENDING"
    EGRESS_COMPLETE = "EGRESS_COMPLETE"
    EGRESS_FAILED = "EGRESS_FAILED"
    EGRESS_ABORTED = "EGRESS_ABORTED"
    EGRESS_LIMIT_REACHED = "EGRESS_LIMIT_REACHED"

    def __str__(self) -> str:
        return self.value


@dataclass
class EgressInfo:
    """The state of one egress as reported to the rest of the system."""

    egress_id: str
    room_name: str = ""
    status: EgressStatus = EgressStatus.EGRESS_STARTING
    error: str = ""
    error_code: int = 0
    started_at: int = 0
    updated_at: int = 0
    ended_at: int = 0


class ShuttingDownError(EgressError):
    """The service is shutting down or unable to record egresses."""

    status = 503

    def __init__(self, message: str = "service is shutting down") -> None:
        super().__init__(message)


class IOClient(Protocol):
    def create_egress(self, info: EgressInfo) -> None: ...

    def update_egress(self, info: EgressInfo) -> None: ...

    def is_healthy(self) -> bool: ...

    def drain(self) -> None: ...


class Bus(Protocol):
    def register_start_egress_topic(self, cluster_id: str) -> None: ...

    def deregister_start_egress_topic(self, cluster_id: str) -> None: ...

    def shutdown(self) -> None: ...


CommandFactory = Callable[[str, str, str], Command]


def _forward_output(proc: subprocess.Popen, handler_id: str) -> None:
    handler_log = logging.getLogger(f"{__name__}.handler")
    assert proc.stdout is not None
    for line in proc.stdout:
        handler_log.info("[%s] %s", handler_id, line.rstrip("\n"))


def _default_command(handler_id: str, config: str, request: str) -> Command:
    def start() -> RunningProcess:
        proc = subprocess.Popen(
            ["egress", "run-handler", "--config", config, "--request", request],
            cwd="/",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        threading.Thread(target=_forward_output, args=(proc, handler_id), daemon=True).start()
        return proc

    return start


def _request_json(req: EgressRequest) -> str:
    return json.dumps(
        {
            "egress_id": req.egress_id,
            "request_type": str(req.request_type),
            "audio_only": req.audio_only,
            "estimated_cpu": req.estimated_cpu,
            "request": req.request,
        },
        default=str,
    )


class Server(ProcessManager):
    """Accepts egress requests and supervises the handler processes that run them."""

    def __init__(
        self,
        io_client: IOClient,
        *,
        cpu_cost_config: Optional[CPUCostConfig] = None,
        node_id: str = "",
        cluster_id: str = "",
        num_cpu: Optional[float] = None,
        registry: Optional[Registry] = None,
        bus: Optional[Bus] = None,
        tmp_dir: str = DEFAULT_TMP_DIR,
        base_config: Optional[Mapping[str, Any]] = None,
        command_factory: Optional[CommandFactory] = None,
        client_factory: Optional[ClientFactory] = None,
        validate: Optional[Callable[[EgressRequest], None]] = None,
        launch_timeout: float = LAUNCH_TIMEOUT,
        prometheus_port: int = 0,
        debug_handler_port: int = 0,
        drain_interval: float = 1.0,
    ) -> None:
        super().__init__(client_factory=client_factory, tmp_dir=tmp_dir, launch_timeout=launch_timeout)
        self.node_id = node_id
        self.cluster_id = cluster_id
        self.tmp_dir = tmp_dir
        self._io = io_client
        self._bus = bus
        self._base_config = dict(base_config or {})
        self._command_factory = command_factory or _default_command
        self._validate = validate
        self._drain_interval = drain_interval

        registry = registry if registry is not None else DEFAULT_REGISTRY
        self.metrics = MetricsService(self, registry)
        self.debug = DebugService(self)
        self.monitor = Monitor(
            cpu_cost_config or CPUCostConfig(),
            self,
            node_id=node_id,
            cluster_id=cluster_id,
            num_cpu=num_cpu,
            registry=registry,
        )

        self._active_lock = threading.Lock()
        self._active_requests = 0
        self._terminating = threading.Event()
        self._shutdown = threading.Event()
        self._shutdown_lock = threading.Lock()

        if debug_handler_port > 0:
            self.debug.start_debug_handlers(debug_handler_port)
        self._prom_server = self._start_prometheus(prometheus_port) if prometheus_port > 0 else None

        os.makedirs(os.path.join(tmp_dir, node_id), mode=0o755, exist_ok=True)

    def _start_prometheus(self, port: int) -> ThreadingHTTPServer:
        metrics = self.metrics

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                body = metrics.render().encode()
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args) -> None:  # noqa: A002
                log.debug(format, *args)

        server = ThreadingHTTPServer(("", port), _Handler)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        return server

    def _inc_active(self) -> None:
        with self._active_lock:
            self._active_requests += 1

    def _dec_active(self) -> None:
        with self._active_lock:
            self._active_requests -= 1

    # lifecycle

    def run(self) -> None:
        """Take requests until shutdown, then drain."""
        log.debug("starting service (version=%s)", VERSION)
        if self._bus is not None:
            self._bus.register_start_egress_topic(self.cluster_id)
        log.info("service ready")
        self._shutdown.wait()
        log.info("draining")
        self.drain()
        log.info("service stopped")

    def status(self) -> bytes:
        """JSON of available CPU and the request of every active egress."""
        status: dict[str, Any] = {"CpuLoad": self.monitor.get_available_cpu()}
        self.get_status(status)
        return json.dumps(status, default=str).encode()

    def is_idle(self) -> bool:
        with self._active_lock:
            return self._active_requests == 0

    def is_disabled(self) -> bool:
        return self._shutdown.is_set() or not self._io.is_healthy()

    def is_terminating(self) -> bool:
        return self._terminating.is_set()

    def shutdown(self, terminating: bool, kill: bool) -> None:
        if terminating:
            self._terminating.set()
        with self._shutdown_lock:
            first = not self._shutdown.is_set()
            self._shutdown.set()
        if first and self._bus is not None:
            self._bus.deregister_start_egress_topic(self.cluster_id)
        if kill:
            self.kill_all()

    def drain(self) -> None:
        """Wait for active requests to finish, then stop the bus and the io client."""
        while not self.is_idle():
            time.sleep(self._drain_interval)
        if self._bus is not None:
            self._bus.shutdown()
        if self._prom_server is not None:
            self._prom_server.shutdown()
        log.info("draining io client")
        self._io.drain()

    # calls from handlers

    def handler_ready(self, egress_id: str) -> None:
        self.handler_started(egress_id)

    def handler_update(self, info: EgressInfo) -> None:
        try:
            self._io.update_egress(info)
        except Exception as exc:
            log.error("failed to update egress (egressID=%s): %s", info.egress_id, exc)
        if info.error_code == _INTERNAL_ERROR:
            log.error("internal error, shutting down: %s", info.error)
            self.shutdown(False, False)

    def handler_finished(self, egress_id: str, info: EgressInfo, metrics: str) -> None:
        try:
            self._io.update_egress(info)
        except Exception as exc:
            log.error("failed to update egress (egressID=%s): %s", egress_id, exc)
        try:
            self.metrics.store_process_ended_metrics(egress_id, metrics)
        except Exception as exc:
            log.error("failed to store metrics (egressID=%s): %s", egress_id, exc)

    # requests

    def start_egress(self, req: EgressRequest, info: EgressInfo) -> EgressInfo:
        """Admit a request, record it and launch its handler."""
        self._inc_active()
        if self.is_disabled():
            self._dec_active()
            raise ShuttingDownError()
        if self.already_exists(req.egress_id):
            self._dec_active()
            raise EgressAlreadyExistsError()
        try:
            self.monitor.accept_request(req)
        except Exception:
            self._dec_active()
            raise

        log.info("request received (egressID=%s)", req.egress_id)
        if self._validate is not None:
            try:
                self._validate(req)
            except Exception:
                self.monitor.egress_aborted(req)
                self._dec_active()
                raise
        log.info(
            "request validated (egressID=%s requestType=%s room=%s)",
            req.egress_id, req.request_type, info.room_name,
        )

        with ThreadPoolExecutor(max_workers=1) as executor:
            created = executor.submit(self._io.create_egress, info)
            launch_err: Optional[BaseException] = None
            try:
                self._launch_process(req, info)
            except Exception as exc:
                launch_err = exc
            create_err = created.exception()

        if launch_err is not None:
            if create_err is None:
                # it was recorded, so report the failure
                self._process_ended(req, info, launch_err)
            raise launch_err
        if create_err is not None:
            # launched but not recorded: abort
            info.error = str(create_err)
            info.error_code = _INTERNAL_ERROR
            self.abort_process(req.egress_id, create_err)
            raise create_err
        return info

    def _launch_process(self, req: EgressRequest, info: EgressInfo) -> None:
        self.monitor.egress_started(req)

        handler_id = HANDLER_PREFIX + uuid.uuid4().hex[:12]
        config = yaml.safe_dump(
            {
                **self._base_config,
                "handler_id": handler_id,
                "tmp_dir": os.path.join(self.tmp_dir, req.egress_id),
            }
        )
        cmd = self._command_factory(handler_id, config, _request_json(req))

        running = self.launch(handler_id, req, info, cmd)
        self.monitor.update_pid(info.egress_id, running.pid)

        def wait() -> None:
            code = running.wait()
            err = None if code == 0 else ChildProcessError(f"exit status {code}")
            self._process_ended(req, info, err)

        threading.Thread(target=wait, daemon=True).start()

    def _process_ended(
        self, req: EgressRequest, info: EgressInfo, err: Optional[BaseException]
    ) -> None:
        if err is not None:
            # only when the handler failed catastrophically
            now = time.time_ns()
            info.updated_at = now
            info.ended_at = now
            info.status = EgressStatus.EGRESS_FAILED
            if not info.error:
                info.error = str(err)
                info.error_code = _INTERNAL_ERROR
            try:
                self._io.update_egress(info)
            except Exception:
                pass
            log.error("process failed (egressID=%s): %s", info.egress_id, err)

        avg_cpu, max_cpu, max_memory = self.monitor.egress_ended(req)
        if max_cpu > 0:
            log.debug(
                "egress metrics (egressID=%s avgCPU=%s maxCPU=%s maxMemory=%s)",
                info.egress_id, avg_cpu, max_cpu, max_memory,
            )
        self.process_finished(info.egress_id)
        self._dec_active()

    def start_egress_affinity(self, req: EgressRequest) -> float:
        """How much this node wants the request; negative means it cannot take it."""
        if self.is_disabled() or not self.monitor.can_accept_request(req):
            return -1.0
        if self.is_idle():
            # an idle node defers to one that already handles requests
            return 0.5
        return 1.0

    def list_active_egress(self) -> list[str]:
        return self.get_active_egress_ids()