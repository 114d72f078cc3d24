# synthsched

Reconciliation logic for compositions that are produced by *synthesizers*,
written against a small in-memory object store.

## What is in the package

- `synthsched.model`: dataclasses for the resources involved: `Synthesizer`,
  `Composition` (with `Synthesis`, `CompositionStatus`, `InputRevisions`,
  `Binding`, `EnvVar`, ...) and `Symphony` (with `Variation`, `SymphonySpec`,
  `SymphonyStatus`). `Composition` has helpers such as `synthesizing()`,
  `force_resynthesis()`, `should_force_resynthesis()` and
  `enable_ignore_side_effects()`. `inputs_exist()` and `inputs_out_of_lockstep()`
  check a composition's observed inputs against its synthesizer.
- `synthsched.kube`: `InMemoryClient`, an object store keyed by kind, namespace
  and name. It has `get`, `list`, `create`, `update`, `delete` and
  `patch_status`. `patch_status` takes either an RFC 6902 JSON patch (applied by
  `apply_json_patch`) or a replacement status. Failures raise `NotFoundError`,
  `ConflictError`, `InvalidError` or `ForbiddenError`, all subclasses of
  `ApiError`. The kind names are the constants `COMPOSITIONS`, `SYNTHESIZERS`,
  `SYMPHONIES` and `PODS`. Controllers return a `Result`, whose
  `requeue_after` says when to reconcile again.
- `synthsched.symphony`: `SymphonyController` keeps one composition per
  variation of a symphony. It merges the symphony's and the variation's bindings
  (`get_bindings`) and synthesis environment (`get_synthesis_env`), and copies
  labels and annotations onto the composition (`coalesce_metadata`). It deletes
  compositions whose variation was removed, and duplicates. It releases the
  symphony's finalizer once no compositions remain. `build_status` rolls the
  compositions' ready, reconciled and synthesized times up into the symphony.
- `synthsched.pod`: `new_pod(cfg, comp, syn)` builds the executor `Pod` for a
  composition's in-flight synthesis from a `Config`. The build adds the
  synthesis labels and environment, the security context, tolerations, node
  affinity, and the synthesizer's pod overrides. `filter_env` and
  `find_container_image` are helpers for this.
- `synthsched.gc`: `PodGarbageCollector` deletes synthesis pods in these cases:

  - the node never started them (after `creation_timeout`);
  - their composition or synthesizer is gone;
  - their image no longer matches the synthesizer;
  - the synthesis was canceled or superseded;
  - the synthesis completed;
  - they are orphaned.

  `time_waiting_for_kubelet` and `synthesis_age` are exposed too.

## Example

```python
from synthsched.kube import COMPOSITIONS, SYMPHONIES, InMemoryClient
from synthsched.model import Symphony, SymphonySpec, SynthesizerRef, Variation
from synthsched.symphony import SymphonyController

client = InMemoryClient()
client.create(SYMPHONIES, Symphony(
    name="test",
    namespace="default",
    spec=SymphonySpec(variations=[Variation(synthesizer=SynthesizerRef(name="foo"))]),
))

controller = SymphonyController(client)
controller.reconcile("test", "default")  # adds the cleanup finalizer
controller.reconcile("test", "default")  # creates the composition for "foo"

comps = client.list(COMPOSITIONS, namespace="default")
assert [c.spec.synthesizer.name for c in comps] == ["foo"]
```

Each `reconcile` call makes at most one write. Call it again until nothing
changes, or after `Result.requeue_after` when that is set.

## What the package does not do

- It does not decide when a composition is synthesized. Nothing here dispatches
  syntheses, orders them, enforces a concurrency limit or retries canceled ones.
- It builds synthesizer pods with `new_pod`, but no controller here creates
  them for in-flight syntheses. `PodGarbageCollector` only removes them.
- It keeps no metrics.
- It talks to no cluster. Every controller works against an object with the
  interface of `InMemoryClient`. There is no command-line entry point and no
  long-running process.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```