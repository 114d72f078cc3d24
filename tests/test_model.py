from datetime import datetime, timezone

import pytest

from synthsched.model import (
    Binding,
    Composition,
    CompositionStatus,
    InputRevisions,
    Ref,
    Synthesis,
    Synthesizer,
    SynthesizerSpec,
    inputs_exist,
    inputs_out_of_lockstep,
)


def test_less_numeric_versions():
    assert InputRevisions(key="foo", resource_version="1").less(InputRevisions(key="foo", resource_version="2"))
    assert not InputRevisions(key="foo", resource_version="2").less(InputRevisions(key="foo", resource_version="1"))


def test_less_equal_versions_is_false():
    a = InputRevisions(key="foo", resource_version="modified")
    assert a.less(InputRevisions(key="foo", resource_version="modified")) is False


def test_less_non_numeric_differs():
    a = InputRevisions(key="foo", resource_version="1")
    assert a.less(InputRevisions(key="foo", resource_version="modified")) is True


def test_less_prefers_revision():
    a = InputRevisions(key="foo", resource_version="9", revision=123)
    b = InputRevisions(key="foo", resource_version="1", revision=234)
    assert a.less(b) and not b.less(a)


def test_less_different_keys_raises():
    with pytest.raises(ValueError):
        InputRevisions(key="foo").less(InputRevisions(key="bar"))


def test_force_resynthesis_tracks_latest_uuid():
    comp = Composition(status=CompositionStatus(current_synthesis=Synthesis(uuid="initial-uuid")))
    assert not comp.should_force_resynthesis()
    comp.force_resynthesis()
    assert comp.should_force_resynthesis()
    comp.status.in_flight_synthesis = Synthesis(uuid="next")
    assert not comp.should_force_resynthesis()


def test_ignore_side_effects_and_finalizer():
    comp = Composition(finalizers=["eno.azure.io/cleanup"])
    assert not comp.should_ignore_side_effects()
    comp.enable_ignore_side_effects()
    assert comp.should_ignore_side_effects()
    assert comp.has_finalizer("eno.azure.io/cleanup")
    assert not comp.synthesizing()


def test_status_json_round_trip():
    ts = datetime(2021, 1, 1, tzinfo=timezone.utc)
    status = CompositionStatus(
        in_flight_synthesis=Synthesis(uuid="u", observed_composition_generation=3, initialized=ts, attempts=2,
                                      input_revisions=[InputRevisions(key="foo", resource_version="1", revision=4)]),
        input_revisions=[InputRevisions(key="foo", resource_version="1")],
    )
    assert CompositionStatus.from_json(status.to_json()) == status
    assert status.to_json()["inFlightSynthesis"]["initialized"] == "2021-01-01T00:00:00Z"


def test_empty_status_serializes_as_none():
    assert CompositionStatus().to_json() is None
    assert CompositionStatus.from_json(None) == CompositionStatus()


def test_inputs_exist():
    synth = Synthesizer(spec=SynthesizerSpec(refs=[Ref(key="foo"), Ref(key="bar", defer=True)]))
    comp = Composition()
    comp.spec.bindings = [Binding(key="foo"), Binding(key="bar")]
    comp.status.input_revisions = [InputRevisions(key="foo"), InputRevisions(key="bar")]
    assert inputs_exist(synth, comp)
    comp.status.input_revisions = comp.status.input_revisions[:1]
    assert not inputs_exist(synth, comp)
    assert inputs_exist(Synthesizer(), Composition())


def test_inputs_out_of_lockstep():
    synth = Synthesizer(generation=11)
    revs = [InputRevisions(key="foo", revision=123), InputRevisions(key="bar", revision=234)]
    assert inputs_out_of_lockstep(synth, revs)
    assert not inputs_out_of_lockstep(synth, [InputRevisions(key="foo", revision=123), InputRevisions(key="bar")])
    assert inputs_out_of_lockstep(synth, [InputRevisions(key="foo", synthesizer_generation=10)])