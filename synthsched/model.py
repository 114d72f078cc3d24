"""Resource types handled by the controllers: synthesizers, compositions and symphonies."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

CLEANUP_FINALIZER = "eno.azure.io/cleanup"
FORCE_RESYNTHESIS_ANNOTATION = "eno.azure.io/force-resynthesis"
IGNORE_SIDE_EFFECTS_ANNOTATION = "eno.azure.io/ignore-side-effects"


def format_time(ts: datetime) -> str:
    """Render a timestamp as RFC 3339 with second precision."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(text: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp, returning None for empty input."""
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _time_json(ts: Optional[datetime]) -> Optional[str]:
    return format_time(ts) if ts is not None else None


@dataclass
class _Meta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    generate_name: str = ""
    generation: int = 0
    resource_version: str = ""
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    finalizers: list = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    controller_uid: str = ""

    def has_finalizer(self, name: str) -> bool:
        return name in self.finalizers


@dataclass
class Ref:
    key: str = ""
    defer: bool = False


@dataclass
class PodOverrides:
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    resources: dict = field(default_factory=dict)
    affinity: Any = None


@dataclass
class SynthesizerSpec:
    image: str = ""
    command: list = field(default_factory=list)
    refs: list = field(default_factory=list)
    pod_overrides: PodOverrides = field(default_factory=PodOverrides)
    pod_timeout: Optional[timedelta] = None


@dataclass
class Synthesizer(_Meta):
    spec: SynthesizerSpec = field(default_factory=SynthesizerSpec)


@dataclass
class ResourceBinding:
    name: str = ""
    namespace: str = ""


@dataclass
class Binding:
    key: str = ""
    resource: ResourceBinding = field(default_factory=ResourceBinding)


@dataclass
class EnvVar:
    name: str = ""
    value: str = ""


@dataclass
class SynthesizerRef:
    name: str = ""


@dataclass
class InputRevisions:
    key: str = ""
    resource_version: str = ""
    revision: Optional[int] = None
    synthesizer_generation: Optional[int] = None

    def less(self, other: "InputRevisions") -> bool:
        """True when this revision of an input is older than ``other``."""
        if self.key != other.key:
            raise ValueError(f"cannot compare revisions of {self.key!r} and {other.key!r}")
        if self.revision is not None and other.revision is not None:
            return self.revision < other.revision
        if self.resource_version == other.resource_version:
            return False
        try:
            return int(self.resource_version) < int(other.resource_version)
        except ValueError:
            return True

    def to_json(self) -> dict:
        doc: dict = {"key": self.key, "resourceVersion": self.resource_version}
        if self.revision is not None:
            doc["revision"] = self.revision
        if self.synthesizer_generation is not None:
            doc["synthesizerGeneration"] = self.synthesizer_generation
        return doc

    @classmethod
    def from_json(cls, doc: dict) -> "InputRevisions":
        return cls(
            key=doc.get("key", ""),
            resource_version=doc.get("resourceVersion", ""),
            revision=doc.get("revision"),
            synthesizer_generation=doc.get("synthesizerGeneration"),
        )


@dataclass
class Synthesis:
    uuid: str = ""
    observed_composition_generation: int = 0
    observed_synthesizer_generation: int = 0
    initialized: Optional[datetime] = None
    synthesized: Optional[datetime] = None
    reconciled: Optional[datetime] = None
    ready: Optional[datetime] = None
    canceled: Optional[datetime] = None
    attempts: int = 0
    deferred: bool = False
    input_revisions: list = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "uuid": self.uuid,
            "observedCompositionGeneration": self.observed_composition_generation,
            "observedSynthesizerGeneration": self.observed_synthesizer_generation,
            "initialized": _time_json(self.initialized),
            "synthesized": _time_json(self.synthesized),
            "reconciled": _time_json(self.reconciled),
            "ready": _time_json(self.ready),
            "canceled": _time_json(self.canceled),
            "attempts": self.attempts,
            "deferred": self.deferred,
            "inputRevisions": [r.to_json() for r in self.input_revisions],
        }

    @classmethod
    def from_json(cls, doc: Optional[dict]) -> Optional["Synthesis"]:
        if doc is None:
            return None
        return cls(
            uuid=doc.get("uuid") or "",
            observed_composition_generation=doc.get("observedCompositionGeneration") or 0,
            observed_synthesizer_generation=doc.get("observedSynthesizerGeneration") or 0,
            initialized=parse_time(doc.get("initialized")),
            synthesized=parse_time(doc.get("synthesized")),
            reconciled=parse_time(doc.get("reconciled")),
            ready=parse_time(doc.get("ready")),
            canceled=parse_time(doc.get("canceled")),
            attempts=doc.get("attempts") or 0,
            deferred=bool(doc.get("deferred")),
            input_revisions=[InputRevisions.from_json(r) for r in doc.get("inputRevisions") or []],
        )


@dataclass
class CompositionSpec:
    synthesizer: SynthesizerRef = field(default_factory=SynthesizerRef)
    bindings: list = field(default_factory=list)
    synthesis_env: list = field(default_factory=list)


@dataclass
class CompositionStatus:
    current_synthesis: Optional[Synthesis] = None
    previous_synthesis: Optional[Synthesis] = None
    in_flight_synthesis: Optional[Synthesis] = None
    input_revisions: list = field(default_factory=list)

    @property
    def latest_synthesis_uuid(self) -> str:
        if self.in_flight_synthesis is not None:
            return self.in_flight_synthesis.uuid
        if self.current_synthesis is not None:
            return self.current_synthesis.uuid
        return ""

    def is_empty(self) -> bool:
        return self == CompositionStatus()

    def to_json(self) -> Optional[dict]:
        """Serialize the status; an empty status serializes as None."""
        if self.is_empty():
            return None
        return {
            "currentSynthesis": self.current_synthesis.to_json() if self.current_synthesis else None,
            "previousSynthesis": self.previous_synthesis.to_json() if self.previous_synthesis else None,
            "inFlightSynthesis": self.in_flight_synthesis.to_json() if self.in_flight_synthesis else None,
            "inputRevisions": [r.to_json() for r in self.input_revisions],
        }

    @classmethod
    def from_json(cls, doc: Optional[dict]) -> "CompositionStatus":
        if not doc:
            return cls()
        return cls(
            current_synthesis=Synthesis.from_json(doc.get("currentSynthesis")),
            previous_synthesis=Synthesis.from_json(doc.get("previousSynthesis")),
            in_flight_synthesis=Synthesis.from_json(doc.get("inFlightSynthesis")),
            input_revisions=[InputRevisions.from_json(r) for r in doc.get("inputRevisions") or []],
        )


@dataclass
class Composition(_Meta):
    spec: CompositionSpec = field(default_factory=CompositionSpec)
    status: CompositionStatus = field(default_factory=CompositionStatus)

    def synthesizing(self) -> bool:
        return self.status.in_flight_synthesis is not None

    def should_force_resynthesis(self) -> bool:
        value = self.annotations.get(FORCE_RESYNTHESIS_ANNOTATION)
        return value is not None and value == self.status.latest_synthesis_uuid

    def force_resynthesis(self) -> None:
        self.annotations[FORCE_RESYNTHESIS_ANNOTATION] = self.status.latest_synthesis_uuid

    def should_ignore_side_effects(self) -> bool:
        return self.annotations.get(IGNORE_SIDE_EFFECTS_ANNOTATION) == "true"

    def enable_ignore_side_effects(self) -> None:
        self.annotations[IGNORE_SIDE_EFFECTS_ANNOTATION] = "true"

    def has_finalizer(self, name: str) -> bool:
        return name in self.finalizers


@dataclass
class Variation:
    synthesizer: SynthesizerRef = field(default_factory=SynthesizerRef)
    bindings: list = field(default_factory=list)
    synthesis_env: list = field(default_factory=list)
    labels: dict = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)


@dataclass
class SymphonySpec:
    bindings: list = field(default_factory=list)
    variations: list = field(default_factory=list)
    synthesis_env: list = field(default_factory=list)


@dataclass
class SymphonyStatus:
    observed_generation: int = 0
    ready: Optional[datetime] = None
    reconciled: Optional[datetime] = None
    synthesized: Optional[datetime] = None


@dataclass
class Symphony(_Meta):
    spec: SymphonySpec = field(default_factory=SymphonySpec)
    status: SymphonyStatus = field(default_factory=SymphonyStatus)


def inputs_exist(synth: Synthesizer, comp: Composition) -> bool:
    """True when every input the synthesizer refers to is bound and has been observed."""
    bound = {b.key for b in comp.spec.bindings}
    observed = {r.key for r in comp.status.input_revisions}
    return all(ref.key in bound and ref.key in observed for ref in synth.spec.refs)


def inputs_out_of_lockstep(synth: Synthesizer, revisions: list) -> bool:
    """True when input revisions disagree with each other or with the synthesizer generation."""
    if any(
        r.synthesizer_generation is not None and r.synthesizer_generation < synth.generation
        for r in revisions
    ):
        return True
    seen = {r.revision for r in revisions if r.revision is not None}
    return len(seen) > 1