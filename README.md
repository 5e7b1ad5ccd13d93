# egressd

`egressd` is the control side of a media egress service: the part that
decides whether a node can take on another recording or streaming job,
launches and supervises the handler process for each job, collects their
metrics, and interprets the messages coming out of a running media
pipeline.

## What is inside

| Module | Purpose |
| --- | --- |
| `egressd.types` | Request, source, egress, MIME, profile, output type and file extension enums, and the codec compatibility tables between them. |
| `egressd.metrics` | A small metrics model (`CounterVec`, `GaugeVec`, `HistogramVec`, `GaugeFunc`, `Registry`), parsing and rendering of the text exposition format, and `MetricsService`, which merges the service's metrics with those of its handlers. |
| `egressd.handler_monitor` | `HandlerMonitor`: upload counters, upload response-time histograms and backup-storage write counters for a single handler. |
| `egressd.monitor` | `Monitor`: CPU and memory accounting per egress, admission of new requests, and killing the worst offender when the node is overloaded. |
| `egressd.process` | `ProcessManager` and `Process`: launching handler processes, waiting for them to report ready, aborting and killing them. |
| `egressd.debug` | `DebugService`: pipeline graph (dot file) and profiling endpoints. |
| `egressd.gstwatch` | Parsing of pipeline debug strings, filtering of noisy log lines, and extraction of segment, image and first-sample information from pipeline messages. |
| `egressd.server` | `Server`: ties the above together and answers start, affinity, list and handler update calls. |

## Choosing an output type

The codec tables decide which container can carry a given set of codecs.

```python
from egressd.types import (
    MimeType,
    OutputType,
    get_map_intersection,
    get_output_type_compatible_with_codecs,
    is_output_type_compatible_with_codecs,
)

audio = {MimeType.AAC: True}
video = {MimeType.H264: True}

chosen = get_output_type_compatible_with_codecs(
    [OutputType.OGG, OutputType.MP4], audio, video
)
# chosen is OutputType.MP4: OGG carries neither AAC nor H.264

is_output_type_compatible_with_codecs(OutputType.WEBM, video)  # False
```

When no listed output type suits the codecs, `OutputType.UNKNOWN_FILE`
(an empty value) comes back. A codec set of `None` is not checked; an
empty one matches nothing. Codec sets may be given as mappings to `bool`
or as plain collections.

## Metrics from handlers

Each handler reports its metrics in the text exposition format. The
service parses them, labels every sample with the handler's `egress_id`
(unless it already carries one) and merges them into its own output.

```python
from egressd.metrics import MetricsService, deserialize_metrics, parse_text, render_text

text = "# TYPE jobs_total counter\njobs_total 3\n"

families = deserialize_metrics("EG_example", text)
print(render_text(families))
```

Text that cannot be parsed is logged and skipped rather than raised, so
one misbehaving handler never hides the metrics of the others. Metrics
stored with `MetricsService.store_process_ended_metrics` are reported by
the next `gather()` and then dropped.

## Admission control

`Monitor` keeps a CPU cost for each kind of request (room composite, web,
participant, track composite, track, and the audio-only variants), set in
`CPUCostConfig`. A request's `estimated_cpu`, when non-zero, takes the
place of the configured cost. A request is accepted only when the
available CPU covers its cost, the number of concurrent web and room
composite requests stays under `max_concurrent_web`, and the memory
limit, if set, would not be crossed. Accepted requests hold their cost
for thirty seconds by default, until usage of the handler process is
measured.

Usage samples are fed in with `Monitor.update_egress_stats(ProcStats(...))`.
Each sample with node load above the kill threshold, while more than one
request is running, counts towards a kill; at ten such samples the egress
using the most CPU beyond its allowance is killed with a
`CPUExhaustedError` and the count starts again. Total memory above the
limit kills the largest tracked process with an `OutOfMemoryError`.

## The server

`Server` takes an io client (an object with `create_egress`,
`update_egress`, `is_healthy` and `drain`) and, optionally, a bus (with
`register_start_egress_topic`, `deregister_start_egress_topic` and
`shutdown`). `start_egress` admits a request, records it through the io
client and launches its handler; by default the handler is started as
`egress run-handler --config <yaml> --request <json>`, which can be
replaced with `command_factory`. A handler must call `handler_ready`
within the launch timeout or it is killed. `prometheus_port` and
`debug_handler_port` start HTTP servers for the metrics text and the
debug endpoints (`/gst_pipeline/<egress_id>`,
`/pprof/<egress_id>/<profile>`, and `/pprof/threads` for the service's
own thread stacks).

## What this package does not do

- It has no command-line program and installs no command.
- It does not contain the handler program that runs a recording or
  stream, nor the media pipeline; `egressd.gstwatch` only interprets the
  strings and message fields such a pipeline produces.
- It has no message bus or database client: the io client and bus that
  `Server` talks to are supplied by the caller.
- It does not read CPU and memory usage itself; samples must be passed to
  `Monitor.update_egress_stats`.

## Errors

Failures are raised as exceptions: `NotEnoughCPUError`,
`EgressAlreadyExistsError`, `CPUExhaustedError`, `OutOfMemoryError`,
`EgressNotFoundError`, `ShuttingDownError` and `GstPipelineError`, all
built on `egressd.types.EgressError`, which carries an HTTP-style
`status`. `egressd.debug.get_error_code` maps an error to that status,
or 500 for other exceptions.

## Running the tests

The test suite uses pytest and is installed with the `test` extra.