"""CPU and memory admission control for egress requests, with node-level gauges."""

from __future__ import annotations

import logging
import math
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from egressd.metrics import DEFAULT_REGISTRY, GaugeFunc, GaugeVec, Registry
from egressd.types import EgressError, RequestType

log = logging.getLogger(__name__)

CPU_HOLD_DURATION = 30.0
DEFAULT_KILL_THRESHOLD = 0.95
MIN_KILL_DURATION = 10
GB = 1024.0 * 1024.0 * 1024.0

_WEB_REQUESTS = frozenset({RequestType.ROOM_COMPOSITE, RequestType.WEB})


class NotEnoughCPUError(EgressError):
    """Not enough CPU to accept the request."""

    status = 503

    def __init__(self, message: str = "not enough CPU") -> None:
        super().__init__(message)


class EgressAlreadyExistsError(EgressError):
    """A request with this egress id is already known."""

    status = 409

    def __init__(self, message: str = "egress already exists") -> None:
        super().__init__(message)


class CPUExhaustedError(EgressError):
    """An egress was using more CPU than the node can give it."""

    def __init__(self, usage: float) -> None:
        super().__init__(f"CPU exhausted: {usage:.2f} cores used")
        self.usage = usage


class OutOfMemoryError(EgressError):
    """An egress was using more memory than the node can give it."""

    def __init__(self, usage: float) -> None:
        super().__init__(f"out of memory: {usage:.2f} GB used")
        self.usage = usage


@dataclass
class CPUCostConfig:
    """Estimated CPU cost of each request type and node-wide limits."""

    room_composite_cpu_cost: float = 4.0
    audio_room_composite_cpu_cost: float = 1.0
    web_cpu_cost: float = 4.0
    audio_web_cpu_cost: float = 1.0
    participant_cpu_cost: float = 2.0
    track_composite_cpu_cost: float = 1.0
    track_cpu_cost: float = 0.5
    max_cpu_utilization: float = 0.8
    max_memory: float = 0.0
    memory_cost: float = 1.0
    max_concurrent_web: int = 18


@dataclass
class EgressRequest:
    """What the monitor needs to know about a start request."""

    egress_id: str
    request_type: RequestType
    audio_only: bool = False
    estimated_cpu: float = 0.0
    request: Any = None


@dataclass
class ProcStats:
    """One sample of node CPU idle time and per-process CPU and memory use."""

    cpu_idle: float
    cpu: dict[int, float] = field(default_factory=dict)
    memory: dict[int, int] = field(default_factory=dict)


@dataclass
class _EgressStats:
    egress_id: str
    pending_cpu: float = 0.0
    last_cpu: float = 0.0
    allowed_cpu: float = 0.0
    total_cpu: float = 0.0
    cpu_counter: int = 0
    max_cpu: float = 0.0
    max_memory: int = 0

    @property
    def held_cpu(self) -> float:
        return max(self.pending_cpu, self.last_cpu)


class Service(Protocol):
    def is_idle(self) -> bool: ...

    def is_disabled(self) -> bool: ...

    def is_terminating(self) -> bool: ...

    def kill_process(self, egress_id: str, err: Exception) -> None: ...


class Monitor:
    """Decides whether this node can take a request and kills runaway egresses."""

    def __init__(
        self,
        cpu_cost_config: CPUCostConfig,
        svc: Service,
        *,
        node_id: str = "",
        cluster_id: str = "",
        num_cpu: Optional[float] = None,
        registry: Optional[Registry] = None,
        cpu_hold_duration: float = CPU_HOLD_DURATION,
    ) -> None:
        self.node_id = node_id
        self.cluster_id = cluster_id
        self.cpu_cost_config = cpu_cost_config
        self.num_cpu = float(num_cpu if num_cpu is not None else (os.cpu_count() or 1))
        self._svc = svc
        self._cpu_hold_duration = cpu_hold_duration
        self._registry = registry if registry is not None else DEFAULT_REGISTRY

        self._lock = threading.Lock()
        self._requests = 0
        self._web_requests = 0
        self._high_cpu_duration = 0
        self._pending: dict[str, _EgressStats] = {}
        self._proc_stats: dict[int, _EgressStats] = {}
        self._memory_usage = 0.0
        self._timers: set[threading.Timer] = set()

        self._validate_cpu_config()
        self._init_prometheus()

    def _validate_cpu_config(self) -> None:
        c = self.cpu_cost_config
        requirements = sorted(
            (
                c.room_composite_cpu_cost,
                c.audio_room_composite_cpu_cost,
                c.web_cpu_cost,
                c.audio_web_cpu_cost,
                c.participant_cpu_cost,
                c.track_composite_cpu_cost,
                c.track_cpu_cost,
            )
        )
        minimum, maximum = requirements[0], requirements[-1]
        recommended = max(maximum, 3.0)
        if self.num_cpu < minimum:
            log.error(
                "not enough cpu (minimumCpu=%s recommended=%s available=%s)",
                minimum, recommended, self.num_cpu,
            )
            raise NotEnoughCPUError("not enough cpu")
        if self.num_cpu < maximum:
            log.error(
                "not enough cpu for some egress types (minimumCpu=%s recommended=%s available=%s)",
                maximum, recommended, self.num_cpu,
            )
        log.info("cpu available: %f max cost: %f", self.num_cpu, maximum)

    def _init_prometheus(self) -> None:
        labels = {"node_id": self.node_id, "cluster_id": self.cluster_id}

        def gauge(name: str, function: Callable[[], float]) -> GaugeFunc:
            return GaugeFunc(
                name, "", function,
                namespace="livekit", subsystem="egress", const_labels=labels,
            )

        cpu_load = GaugeVec(
            "cpu_load", "", (),
            namespace="livekit", subsystem="node",
            const_labels={**labels, "node_type": "EGRESS"},
        )
        self._request_gauge = GaugeVec(
            "requests", "", ("type",),
            namespace="livekit", subsystem="egress", const_labels=labels,
        )
        self._registry.register(
            gauge("available", self._prom_is_idle),
            gauge("can_accept_request", self._prom_can_accept_request),
            gauge("is_disabled", self._prom_is_disabled),
            gauge("is_terminating", self._prom_is_terminating),
            cpu_load,
            self._request_gauge,
        )
        self._cpu_load = cpu_load.labels()

    def _prom_is_idle(self) -> float:
        return 1.0 if self._svc.is_idle() else 0.0

    def _prom_can_accept_request(self) -> float:
        with self._lock:
            _, can_accept = self._can_accept_request_locked(
                EgressRequest(egress_id="", request_type=RequestType.WEB)
            )
        return 1.0 if not self._svc.is_disabled() and can_accept else 0.0

    def _prom_is_disabled(self) -> float:
        return 1.0 if self._svc.is_disabled() else 0.0

    def _prom_is_terminating(self) -> float:
        return 1.0 if self._svc.is_terminating() else 0.0

    def _cpu_cost(self, req: EgressRequest) -> float:
        c = self.cpu_cost_config
        kind = req.request_type
        if kind == RequestType.ROOM_COMPOSITE:
            return c.audio_room_composite_cpu_cost if req.audio_only else c.room_composite_cpu_cost
        if kind == RequestType.WEB:
            return c.audio_web_cpu_cost if req.audio_only else c.web_cpu_cost
        if kind == RequestType.PARTICIPANT:
            return c.participant_cpu_cost
        if kind == RequestType.TRACK_COMPOSITE:
            return c.track_composite_cpu_cost
        if kind == RequestType.TRACK:
            return c.track_cpu_cost
        return 0.0

    def can_accept_web_request(self) -> bool:
        with self._lock:
            return self._web_requests < self.cpu_cost_config.max_concurrent_web

    def can_accept_request(self, req: EgressRequest) -> bool:
        with self._lock:
            fields, can_accept = self._can_accept_request_locked(req)
        log.debug("cpu check %s", fields)
        return can_accept

    def _can_accept_request_locked(self, req: EgressRequest) -> tuple[dict[str, Any], bool]:
        total, available, pending, used = self._get_cpu_usage_locked()
        c = self.cpu_cost_config
        fields: dict[str, Any] = {
            "total": total,
            "available": available,
            "pending": pending,
            "used": used,
            "activeRequests": self._requests,
            "activeWeb": self._web_requests,
            "memory": self._memory_usage,
        }

        if c.max_memory > 0 and self._memory_usage + c.memory_cost >= c.max_memory:
            fields["canAccept"] = False
            return fields, False

        if req.request_type in _WEB_REQUESTS and self._web_requests >= c.max_concurrent_web:
            fields["canAccept"] = False
            return fields, False

        required = req.estimated_cpu or self._cpu_cost(req)
        accept = available >= required
        fields["required"] = required
        fields["canAccept"] = accept
        return fields, accept

    def accept_request(self, req: EgressRequest) -> None:
        """Reserve CPU for a request; raises if it cannot be accepted."""
        with self._lock:
            if req.egress_id in self._pending:
                raise EgressAlreadyExistsError()
            _, ok = self._can_accept_request_locked(req)
            if not ok:
                log.warning("can not accept request")
                raise NotEnoughCPUError()

            self._requests += 1
            if req.request_type in _WEB_REQUESTS:
                self._web_requests += 1
            cpu_hold = self._cpu_cost(req)
            stats = _EgressStats(req.egress_id, pending_cpu=cpu_hold, allowed_cpu=cpu_hold)
            self._pending[req.egress_id] = stats
            self._start_hold_timer(stats)

    def _start_hold_timer(self, stats: _EgressStats) -> None:
        timer: threading.Timer

        def release() -> None:
            with self._lock:
                stats.pending_cpu = 0.0
                self._timers.discard(timer)

        timer = threading.Timer(self._cpu_hold_duration, release)
        timer.daemon = True
        self._timers.add(timer)
        timer.start()

    def close(self) -> None:
        """Cancel outstanding CPU hold timers."""
        with self._lock:
            timers, self._timers = self._timers, set()
        for timer in timers:
            timer.cancel()

    def update_pid(self, egress_id: str, pid: int) -> None:
        with self._lock:
            stats = self._pending.pop(egress_id, None)
            if stats is None:
                log.warning("missing pending procStats (egressID=%s)", egress_id)
                stats = _EgressStats(egress_id, allowed_cpu=self.cpu_cost_config.web_cpu_cost)
            existing = self._proc_stats.get(pid)
            if existing is not None:
                stats.max_cpu = existing.max_cpu
                stats.total_cpu = existing.total_cpu
                stats.cpu_counter = existing.cpu_counter
            self._proc_stats[pid] = stats

    def egress_aborted(self, req: EgressRequest) -> None:
        with self._lock:
            self._pending.pop(req.egress_id, None)
            self._requests -= 1
            if req.request_type in _WEB_REQUESTS:
                self._web_requests -= 1

    def egress_started(self, req: EgressRequest) -> None:
        if req.request_type in RequestType.__members__.values():
            self._request_gauge.labels(type=str(req.request_type)).inc(1)

    def egress_ended(self, req: EgressRequest) -> tuple[float, float, int]:
        """Release a request; returns its average CPU, peak CPU and peak memory."""
        with self._lock:
            if req.request_type in RequestType.__members__.values():
                self._request_gauge.labels(type=str(req.request_type)).dec(1)
            if req.request_type in _WEB_REQUESTS:
                self._web_requests -= 1
            self._pending.pop(req.egress_id, None)
            self._requests -= 1

            for pid, stats in list(self._proc_stats.items()):
                if stats.egress_id == req.egress_id:
                    del self._proc_stats[pid]
                    average = (
                        stats.total_cpu / stats.cpu_counter if stats.cpu_counter else math.nan
                    )
                    return average, stats.max_cpu, stats.max_memory
        return 0.0, 0.0, 0

    def get_available_cpu(self) -> float:
        with self._lock:
            return self._get_cpu_usage_locked()[1]

    def _get_cpu_usage_locked(self) -> tuple[float, float, float, float]:
        total = self.num_cpu
        if self._requests == 0:
            return total, total, 0.0, 0.0
        pending = sum(stats.held_cpu for stats in self._pending.values())
        used = sum(stats.held_cpu for stats in self._proc_stats.values())
        # with requests running, cap usage at the configured utilization
        available = total * self.cpu_cost_config.max_cpu_utilization - pending - used
        return total, available, pending, used

    def update_egress_stats(self, stats: ProcStats) -> None:
        """Record a usage sample, killing the worst egress on sustained overload."""
        load = 1 - stats.cpu_idle / self.num_cpu
        self._cpu_load.set(load)
        kills: list[tuple[str, Exception]] = []

        with self._lock:
            max_cpu = 0.0
            max_cpu_egress = ""
            for pid, usage in stats.cpu.items():
                proc = self._proc_stats.get(pid)
                if proc is None:
                    continue
                proc.last_cpu = usage
                proc.total_cpu += usage
                proc.cpu_counter += 1
                proc.max_cpu = max(proc.max_cpu, usage)
                if usage > proc.allowed_cpu and usage > max_cpu:
                    max_cpu = usage
                    max_cpu_egress = proc.egress_id

            utilization = self.cpu_cost_config.max_cpu_utilization
            kill_threshold = DEFAULT_KILL_THRESHOLD
            if kill_threshold <= utilization:
                kill_threshold = (1 + utilization) / 2

            if load > kill_threshold:
                log.warning("high cpu usage (cpu=%s requests=%s)", load, self._requests)
                if self._requests > 1:
                    self._high_cpu_duration += 1
                    if self._high_cpu_duration >= MIN_KILL_DURATION:
                        kills.append((max_cpu_egress, CPUExhaustedError(max_cpu)))
                        self._high_cpu_duration = 0

            total_memory = 0
            max_memory = 0
            max_memory_egress = ""
            for pid, usage in stats.memory.items():
                total_memory += usage
                proc = self._proc_stats.get(pid)
                if proc is None:
                    continue
                proc.max_memory = max(proc.max_memory, usage)
                if usage > max_memory:
                    max_memory = usage
                    max_memory_egress = proc.egress_id

            self._memory_usage = total_memory / GB
            limit = self.cpu_cost_config.max_memory
            if limit > 0 and total_memory > int(limit * GB):
                log.warning(
                    "high memory usage (memory=%s requests=%s)", self._memory_usage, self._requests
                )
                kills.append((max_memory_egress, OutOfMemoryError(max_memory / GB)))

        for egress_id, err in kills:
            self._svc.kill_process(egress_id, err)