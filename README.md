# overseer

`overseer` is a node agent. It reads hardware performance counter values for
every logical CPU of a node and turns them into contention features. From
those features it builds a per-node `NodeState` snapshot and publishes it.
A scheduler can read the snapshot to see which sockets have a contended
last-level cache or a saturated memory controller.

## Installation

```
pip install .
```

To run the tests, install the `test` extra:

```
pip install ".[test]"
pytest
```

## Running the agent

```
overseer-agent --source replay --trace frames.ndjson --node worker-1 --interval 1s --addr :9100
```

Options:

- `--source`: the counter source, `perf` or `replay`. The default is `perf`.
  This package has no hardware counter source (see below), so `perf` logs an
  error and exits with status 1. Use `--source replay`.
- `--trace`: a trace file of JSON frames to replay with `--source replay`.
  Without this option every counter reads as zero.
- `--node`: the node name. The default is the `NODE_NAME` environment
  variable, or the host name when that is unset.
- `--interval`: the sampling period. It takes durations such as `1s`,
  `500ms` or `1m30s`. The default is one second.
- `--uarch`: the microarchitecture used to validate event names. The
  default is `sapphire_rapids`, which is the only one known.
- `--addr`: the listen address of the HTTP endpoint, in `host:port` form.
  The default is `:9100`.
- `--version`: prints the version and exits.

The agent runs until it receives SIGINT or SIGTERM.

### HTTP endpoint

`GET /state` returns the latest snapshot as JSON. Before the first sample
has been taken it answers `503 no snapshot yet`. Any method other than GET
gets a `405`.

### In-cluster publishing

When `KUBERNETES_SERVICE_HOST` is set, the agent also sends each snapshot to
the API server as an `overseer.io/v1alpha1` `NodeState` resource, using
server-side apply. It reads the service-account token and CA certificate
from `/var/run/secrets/kubernetes.io/serviceaccount/`. If those files cannot
be read, the agent logs a warning and carries on with only the HTTP endpoint.
A failed publish is logged and does not stop sampling.

### Trace files

A trace file is a stream of JSON objects, normally one per line:

```
{"core_id": 0, "counts": {"INSTRUCTIONS": 1000000, "CYCLES": 2000000, "L1_MISS": 50000, "LLC_MISS": 20000, "DRAM_STALL": 300000}}
```

Each read takes one frame per core, in file order. When the frames run out,
reading starts again from the first frame. An event that a frame does not
list reads as zero.

## Using the library

```python
from datetime import datetime, timedelta, timezone

from overseer.features import CoreSample, WindowSamples, compute
from overseer.pmu import Event
from overseer.replay import ReplayBackend, TraceFrame

frames = [TraceFrame(core_id=0, counts={"INSTRUCTIONS": 1_000_000, "CYCLES": 2_000_000})]
backend = ReplayBackend("sapphire_rapids", frames)
handle = backend.open([0], [Event.INSTRUCTIONS, Event.CYCLES])
samples = backend.read(handle)
backend.close(handle)

vector = compute(
    WindowSamples(
        start=datetime.now(timezone.utc),
        duration=timedelta(seconds=1),
        cores=[CoreSample(core_id=s.core_id, counts=s.counts) for s in samples],
    )
)
print(vector.ipc)  # 0.5
```

Modules:

- `overseer.pmu` defines the `Event` names, the `CounterSource` interface,
  `Handle` and `RawSample`. It also has `lookup_encodings` and the errors
  `UnknownEventsError` and `HandleNotFoundError`. `UnknownEventsError` is
  raised when an event or microarchitecture has no perf encoding, and it lists
  every missing event.
- `overseer.replay` provides `ReplayBackend`, a `CounterSource` that replays
  `TraceFrame`s, and `load_trace_file`.
- `overseer.collector.Collector` is an asyncio sampler. `run()` reads the
  source every interval. `batches()` yields the buffered sample batches until
  the collector stops.
- `overseer.topology.discover(root)` reads the layout of CPUs, L2 and L3
  caches and NUMA nodes from the sysfs tree under `root`.
  `discover_from_sysfs()` reads it from `/`. The resulting `TopologySummary`
  answers `smt_sibling_of`, `cores_in_l3_with_core` and
  `is_on_saturated_imc`. `parse_cpu_list` parses cpulist strings such as
  `"0-3,8-11"`.
- `overseer.features.compute` scales counts for PMU multiplexing. From them
  it derives the LLC miss rate, the DRAM stall ratio, L1 replacements per
  thousand instructions, IPC and the effective frequency.
  `FeatureVector.model_features` clears the diagnostic-only fields.
  `to_dict` and `from_dict` convert a `FeatureVector` to and from its JSON
  form.
- `overseer.nodestate.NodeState` is the published snapshot, made of
  `SocketState` and `CoreState`. It round-trips through `to_json` and
  `from_json`.
- `overseer.interference.DegradationScore` and `SourceKind` describe the
  predicted KPI impact of placing a workload on a node.
- `overseer.publisher` provides `HTTPPublisher`, `CRDPublisher` and
  `FuncPublisher`. `FuncPublisher` wraps a plain or async callable.
- `overseer.agent.Agent` runs the loop that collects counters, computes
  features and publishes the result. `assemble_node_state` builds a
  `NodeState` from a topology and a feature vector.

## What this package does not do

- It has no hardware counter source. Counters come only from recorded
  traces through `ReplayBackend`, or from your own `CounterSource`.
- `overseer.regime.Classifier.predict` always returns `Label.IDLE`, and the
  agent leaves `NodeState.workload_regimes` empty.
- SMT sibling activity is not tracked. Every `CoreState.smt_sibling_busy`
  is `False`. Socket contention flags come from node-wide averages.
- There is no scheduler. The package only produces the snapshots a
  scheduler would read.