"""Tracking and control of the handler processes that run individual egresses."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from egressd.metrics import MetricFamily, deserialize_metrics
from egressd.types import EgressError

log = logging.getLogger(__name__)

LAUNCH_TIMEOUT = 10.0
DEFAULT_TMP_DIR = os.path.join(tempfile.gettempdir(), "egress")
EGRESS_FAILED = "EGRESS_FAILED"
_FORBIDDEN = 403


class EgressNotFoundError(EgressError):
    """No active handler is known for the egress."""

    status = 404

    def __init__(self, message: str = "egress not found") -> None:
        super().__init__(message)


class HandlerClient(Protocol):
    """Calls a running handler process answers."""

    def get_metrics(self) -> str: ...

    def get_pipeline_dot(self) -> str: ...

    def get_pprof(self, profile_name: str, timeout: int, debug: int) -> bytes: ...


class RunningProcess(Protocol):
    pid: int

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...


Command = Union[Sequence[str], Callable[[], RunningProcess]]
ClientFactory = Callable[[str], HandlerClient]


@dataclass(eq=False)
class Process:
    """One handler process and what the service knows about it."""

    handler_id: str
    req: Any
    info: Any
    cmd: Optional[RunningProcess] = None
    client: Optional[HandlerClient] = None
    ready: threading.Event = field(default_factory=threading.Event, repr=False)
    closed: threading.Event = field(default_factory=threading.Event, repr=False)
    _kill_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def egress_id(self) -> str:
        return getattr(self.info, "egress_id", "") or getattr(self.req, "egress_id", "")

    def gather(self) -> list[MetricFamily]:
        """Fetch the handler's metrics; a handler that cannot answer yields none."""
        if self.client is None:
            return []
        try:
            text = self.client.get_metrics()
        except Exception as exc:  # the handler may be gone or unresponsive
            if not self.closed.is_set():
                log.warning(
                    "failed to obtain metrics from handler (egressID=%s): %s",
                    getattr(self.req, "egress_id", ""),
                    exc,
                )
            return []
        return deserialize_metrics(self.egress_id, text)

    def kill(self) -> None:
        """Interrupt the process, once; later calls do nothing."""
        with self._kill_lock:
            if self.closed.is_set():
                return
            self.closed.set()
        if self.cmd is None:
            return
        try:
            self.cmd.send_signal(signal.SIGINT)
        except OSError as exc:
            log.error(
                "failed to kill process (egressID=%s): %s",
                getattr(self.req, "egress_id", ""),
                exc,
            )


class ProcessManager:
    """Registry of active handler processes keyed by egress id."""

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        tmp_dir: str = DEFAULT_TMP_DIR,
        launch_timeout: float = LAUNCH_TIMEOUT,
    ) -> None:
        self._client_factory = client_factory
        self._tmp_dir = tmp_dir
        self._launch_timeout = launch_timeout
        self._lock = threading.Lock()
        self._active: dict[str, Process] = {}

    @staticmethod
    def _start(cmd: Command) -> RunningProcess:
        if callable(cmd):
            return cmd()
        return subprocess.Popen(list(cmd))

    def launch(self, handler_id: str, req: Any, info: Any, cmd: Command) -> RunningProcess:
        """Start a handler and wait for it to report ready.

        Raises EgressNotFoundError if it does not report in time; the
        process is then killed.
        """
        handler_dir = os.path.join(self._tmp_dir, handler_id)
        os.makedirs(handler_dir, mode=0o755, exist_ok=True)
        client = self._client_factory(handler_dir) if self._client_factory else None

        process = Process(handler_id=handler_id, req=req, info=info, client=client)
        with self._lock:
            self._active[info.egress_id] = process

        try:
            running = self._start(cmd)
        except OSError as exc:
            log.error("could not launch process: %s", exc)
            raise
        process.cmd = running

        if process.ready.wait(self._launch_timeout):
            return running

        log.warning("no response from handler (egressID=%s)", info.egress_id)
        try:
            running.kill()
            running.wait()
        except OSError:
            pass
        raise EgressNotFoundError()

    def already_exists(self, egress_id: str) -> bool:
        with self._lock:
            return egress_id in self._active

    def handler_started(self, egress_id: str) -> None:
        with self._lock:
            process = self._active.get(egress_id)
        if process is None:
            raise EgressNotFoundError()
        process.ready.set()

    def get_active_egress_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def get_status(self, info: dict[str, Any]) -> None:
        """Add each active egress's request to info, keyed by egress id."""
        with self._lock:
            for process in self._active.values():
                info[process.req.egress_id] = getattr(process.req, "request", None)

    def get_gatherers(self) -> list[Process]:
        with self._lock:
            return list(self._active.values())

    def get_client(self, egress_id: str) -> HandlerClient:
        with self._lock:
            process = self._active.get(egress_id)
        if process is None or process.client is None:
            raise EgressNotFoundError()
        return process.client

    def kill_all(self) -> None:
        with self._lock:
            processes = list(self._active.values())
        for process in processes:
            process.kill()

    def abort_process(self, egress_id: str, err: Exception) -> None:
        with self._lock:
            process = self._active.pop(egress_id, None)
        if process is None:
            return
        log.warning("aborting egress (egressID=%s): %s", egress_id, err)
        process.kill()
        process.closed.set()

    def kill_process(self, egress_id: str, err: Exception) -> None:
        """Mark the egress failed with err and interrupt its handler."""
        with self._lock:
            process = self._active.get(egress_id)
        if process is None:
            return
        log.error("killing egress (egressID=%s): %s", egress_id, err)
        now = time.time_ns()
        info = process.info
        info.status = EGRESS_FAILED
        info.error = str(err)
        info.error_code = _FORBIDDEN
        info.updated_at = now
        info.ended_at = now
        process.kill()

    def process_finished(self, egress_id: str) -> None:
        with self._lock:
            process = self._active.pop(egress_id, None)
        if process is not None:
            process.closed.set()