"""Per-handler upload and backup metrics."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from egressd.metrics import DEFAULT_REGISTRY, CounterVec, GaugeFunc, HistogramVec, Registry

_NAMESPACE = "livekit"
_SUBSYSTEM = "egress"
_UPLOAD_BUCKETS = (10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 15000, 20000, 30000)


def _ids(node_id: str, cluster_id: str, egress_id: str) -> dict[str, str]:
    return {"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id}


class HandlerMonitor:
    """Counts uploads and backup writes for one egress handler."""

    def __init__(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        registry: Optional[Registry] = None,
    ) -> None:
        self._registry = registry if registry is not None else DEFAULT_REGISTRY
        constant_labels = _ids(node_id, cluster_id, egress_id)

        # type: file, manifest, segment, liveplaylist, playlist; status: success, failure
        self.uploads_counter = CounterVec(
            "pipeline_uploads",
            "Number of uploads per pipeline with type and status labels",
            ("type", "status"),
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            const_labels=constant_labels,
        )
        self.uploads_response_time = HistogramVec(
            "pipline_upload_response_time_ms",
            "A histogram of latencies for upload requests in milliseconds.",
            ("type", "status"),
            buckets=_UPLOAD_BUCKETS,
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            const_labels=constant_labels,
        )
        self.backup_counter = CounterVec(
            "backup_storage_writes",
            "number of writes to backup storage location by output type",
            ("output_type",),
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            const_labels=constant_labels,
        )
        self._registry.register(self.uploads_counter, self.uploads_response_time, self.backup_counter)

    def _record_upload(self, upload_type: str, status: str, elapsed: float) -> None:
        self.uploads_counter.labels(type=upload_type, status=status).inc(1)
        self.uploads_response_time.labels(type=upload_type, status=status).observe(elapsed)

    def inc_upload_count_success(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "success", elapsed)

    def inc_upload_count_failure(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "failure", elapsed)

    def inc_backup_storage_writes(self, output_type: str) -> None:
        self.backup_counter.labels(output_type=output_type).inc(1)

    def _register_gauge(
        self,
        name: str,
        help_text: str,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        function: Callable[[], float],
    ) -> GaugeFunc:
        gauge = GaugeFunc(
            name,
            help_text,
            function,
            namespace=_NAMESPACE,
            subsystem=_SUBSYSTEM,
            const_labels=_ids(node_id, cluster_id, egress_id),
        )
        self._registry.register(gauge)
        return gauge

    def register_segments_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> GaugeFunc:
        return self._register_gauge(
            "segments_uploads_channel_size",
            "number of segment uploads pending in channel",
            node_id,
            cluster_id,
            egress_id,
            channel_size_function,
        )

    def register_playlist_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> GaugeFunc:
        return self._register_gauge(
            "playlist_uploads_channel_size",
            "number of playlist updates pending in channel",
            node_id,
            cluster_id,
            egress_id,
            channel_size_function,
        )