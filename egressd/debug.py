"""HTTP endpoints for pipeline graphs and profiles of the service and its handlers."""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from collections.abc import Mapping
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Union
from urllib.parse import parse_qs, urlsplit

from egressd.process import ProcessManager
from egressd.types import EgressError

log = logging.getLogger(__name__)

GST_PIPELINE_DOT_FILE_APP = "gst_pipeline"
PPROF_APP = "pprof"

_TEXT = "text/plain; charset=utf-8"
_BINARY = "application/octet-stream"

Response = tuple[int, str, bytes]
Query = Mapping[str, Union[str, list[str]]]


def get_error_code(err: Optional[BaseException]) -> int:
    """The HTTP status an error maps to."""
    if err is None:
        return HTTPStatus.OK
    if isinstance(err, EgressError):
        return err.status
    return HTTPStatus.INTERNAL_SERVER_ERROR


def _error(message: str, status: int) -> Response:
    return status, _TEXT, (message + "\n").encode()


def _int_param(query: Query, name: str) -> int:
    value = query.get(name, "")
    if isinstance(value, list):
        value = value[0] if value else ""
    try:
        return int(value)
    except ValueError:
        return 0


def _service_profile(name: str) -> bytes:
    if name != "threads":
        raise EgressError(f"profile {name!r} not found", status=HTTPStatus.NOT_FOUND)
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    parts = []
    for ident, frame in sys._current_frames().items():
        parts.append(f"thread {names.get(ident, ident)}:\n")
        parts.extend(traceback.format_stack(frame))
        parts.append("\n")
    return "".join(parts).encode()


class DebugService:
    """Serves pipeline dot files and profiles for debugging."""

    def __init__(self, pm: ProcessManager) -> None:
        self._pm = pm

    def start_debug_handlers(self, port: int) -> Optional[ThreadingHTTPServer]:
        """Serve the debug endpoints on port in a background thread; 0 disables."""
        if port == 0:
            log.debug("debug handler disabled")
            return None

        service = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                url = urlsplit(self.path)
                query = {k: v[0] for k, v in parse_qs(url.query).items()}
                status, content_type, body = service.handle_request(url.path, query)
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args) -> None:  # noqa: A002
                log.debug(format, *args)

        server = ThreadingHTTPServer(("", port), _Handler)
        log.debug("starting debug handler on address :%d", port)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        return server

    def get_gst_pipeline_dot_file(self, egress_id: str) -> str:
        return self._pm.get_client(egress_id).get_pipeline_dot()

    def handle_request(self, path: str, query: Optional[Query] = None) -> Response:
        """Answer a debug request; returns status, content type and body."""
        elements = path.split("/")
        app = elements[1] if len(elements) > 1 else ""
        if app == GST_PIPELINE_DOT_FILE_APP and len(elements) >= 3:
            return self._gst_pipeline_dot_file(elements)
        if app == PPROF_APP and len(elements) >= 3:
            return self._pprof(elements, query or {})
        if app in (GST_PIPELINE_DOT_FILE_APP, PPROF_APP):
            return _error("malformed url", HTTPStatus.NOT_FOUND)
        return _error("404 page not found", HTTPStatus.NOT_FOUND)

    # URL path format is "/<application>/<egress_id>/<optional_other_params>"
    def _gst_pipeline_dot_file(self, elements: list[str]) -> Response:
        try:
            dot = self.get_gst_pipeline_dot_file(elements[2])
        except Exception as exc:
            return _error(str(exc), get_error_code(exc))
        return HTTPStatus.OK, _TEXT, dot.encode()

    # "/<application>/<egress_id>/<profile_name>", or "/<application>/<profile_name>" for the service
    def _pprof(self, elements: list[str], query: Query) -> Response:
        timeout = _int_param(query, "timeout")
        debug = _int_param(query, "debug")

        if len(elements) == 3:
            try:
                body = _service_profile(elements[2])
            except Exception as exc:
                return _error(str(exc), get_error_code(exc))
            return HTTPStatus.OK, _BINARY, body

        if len(elements) == 4:
            try:
                client = self._pm.get_client(elements[2])
            except EgressError:
                return _error("handler not found", HTTPStatus.NOT_FOUND)
            try:
                body = client.get_pprof(elements[3], timeout, debug)
            except Exception as exc:
                return _error(str(exc), get_error_code(exc))
            return HTTPStatus.OK, _BINARY, body

        return _error("malformed url", HTTPStatus.NOT_FOUND)