"""Keeps one composition per symphony variation and rolls their state up into the symphony."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Optional

from synthsched.kube import (
    COMPOSITIONS,
    NAMESPACE_TERMINATING_CAUSE,
    SYMPHONIES,
    ApiError,
    ForbiddenError,
    NotFoundError,
    Result,
)
from synthsched.model import (
    CLEANUP_FINALIZER,
    Composition,
    CompositionSpec,
    Symphony,
    SymphonyStatus,
    SynthesizerRef,
    Variation,
)

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)

log = logging.getLogger(__name__)


class SymphonyController:
    """Creates, updates and deletes the compositions that make up a symphony."""

    def __init__(self, client, no_cache_client=None):
        self.client = client
        self.no_cache_client = no_cache_client if no_cache_client is not None else client

    def reconcile(self, name: str, namespace: str) -> Result:
        try:
            symph = self.client.get(SYMPHONIES, name, namespace)
        except NotFoundError:
            return Result()

        if not symph.has_finalizer(CLEANUP_FINALIZER):
            symph.finalizers.append(CLEANUP_FINALIZER)
            self.client.update(SYMPHONIES, symph)
            return Result()

        existing = [
            comp for comp in self.client.list(COMPOSITIONS, namespace=symph.namespace)
            if comp.controller_uid == symph.uid
        ]

        if self.reconcile_reverse(symph, existing):
            return Result()

        # Release the symphony once no compositions remain
        if symph.deletion_timestamp is not None:
            if existing or not symph.has_finalizer(CLEANUP_FINALIZER):
                return Result()
            symph.finalizers = [f for f in symph.finalizers if f != CLEANUP_FINALIZER]
            self.client.update(SYMPHONIES, symph)
            return Result()

        if self.reconcile_forward(symph, existing):
            return Result()

        self.sync_status(symph, existing)
        return Result()

    def reconcile_reverse(self, symph: Symphony, comps: list) -> bool:
        """Delete compositions whose variation is gone, then duplicates; True when one was deleted."""
        variation_synths = {v.synthesizer.name for v in symph.spec.variations}
        by_synth: dict = {}
        for comp in comps:
            by_synth.setdefault(comp.spec.synthesizer.name, []).append(comp)

            has_variation = comp.spec.synthesizer.name in variation_synths
            if (has_variation and symph.deletion_timestamp is None) or comp.deletion_timestamp is not None:
                continue
            try:
                self.client.delete(COMPOSITIONS, comp)
            except ApiError as err:
                raise ApiError(f"cleaning up composition: {err}") from err
            log.info("deleted composition %s/%s because its variation was removed from the symphony",
                     comp.namespace, comp.name)
            return True

        for group in by_synth.values():
            if len(group) < 2:
                continue
            group = sorted(group, key=lambda c: c.creation_timestamp or _EARLIEST)
            target = group[0]
            try:
                self.client.delete(COMPOSITIONS, target)
            except ApiError as err:
                raise ApiError(f"deleting duplicate composition: {err}") from err
            log.info("deleted composition %s/%s because it's a duplicate", target.namespace, target.name)
            return True

        return False

    def reconcile_forward(self, symph: Symphony, comps: list) -> bool:
        """Create or update the composition of each variation; True when one was written."""
        for variation in symph.spec.variations:
            synth_name = variation.synthesizer.name
            desired = Composition(
                namespace=symph.namespace,
                generate_name=synth_name + "-",
                labels=dict(variation.labels or {}),
                annotations=dict(variation.annotations or {}),
                controller_uid=symph.uid,
                spec=CompositionSpec(
                    synthesizer=SynthesizerRef(name=synth_name),
                    bindings=get_bindings(symph, variation),
                    synthesis_env=get_synthesis_env(symph, variation),
                ),
            )

            match = next((c for c in comps if c.spec.synthesizer.name == synth_name), None)
            if match is None:
                try:
                    uncached = self.no_cache_client.list(COMPOSITIONS, namespace=symph.namespace)
                except ApiError as err:
                    raise ApiError(f"listing existing compositions without cache: {err}") from err
                for cur in uncached:
                    if cur.controller_uid and cur.controller_uid == symph.uid \
                            and cur.spec.synthesizer.name == synth_name:
                        raise ApiError("stale cache - composition already exists")
                try:
                    self.client.create(COMPOSITIONS, desired)
                except ForbiddenError as err:
                    if NAMESPACE_TERMINATING_CAUSE in err.causes:
                        log.info("skipping composition creation because the namespace is being terminated")
                        return False
                    raise ApiError(f"creating composition: {err}") from err
                except ApiError as err:
                    raise ApiError(f"creating composition: {err}") from err
                log.info("created composition %s/%s for symphony", desired.namespace, desired.name)
                return True

            existing = copy.deepcopy(match)
            if desired.spec == existing.spec and not coalesce_metadata(variation, existing):
                continue
            existing.spec = desired.spec
            try:
                self.client.update(COMPOSITIONS, existing)
            except ApiError as err:
                raise ApiError(f"updating existing composition: {err}") from err
            log.info("updated composition %s/%s because its variation changed",
                     existing.namespace, existing.name)
            return True

        return False

    def sync_status(self, symph: Symphony, comps: list) -> None:
        """Write the rolled-up status when it differs from the stored one."""
        new_status = self.build_status(symph, comps)
        if new_status == symph.status:
            return
        target = copy.deepcopy(symph)
        try:
            self.client.patch_status(SYMPHONIES, target, new_status)
        except ApiError as err:
            raise ApiError(f"syncing status: {err}") from err

    def build_status(self, symph: Symphony, comps: list) -> SymphonyStatus:
        """Latest timestamps reached by every composition, None where any composition lags."""
        status = SymphonyStatus(observed_generation=symph.generation)
        for comp in comps:
            syn = comp.status.current_synthesis
            if syn is None:
                continue
            status.ready = _later(status.ready, syn.ready)
            status.reconciled = _later(status.reconciled, syn.reconciled)
            status.synthesized = _later(status.synthesized, syn.synthesized)

        for comp in comps:
            syn = comp.status.current_synthesis
            invalid = (
                syn is None
                or syn.observed_composition_generation != comp.generation
                or comp.deletion_timestamp is not None
            )
            if invalid or syn.ready is None:
                status.ready = None
            if invalid or syn.reconciled is None:
                status.reconciled = None
            if invalid or syn.synthesized is None:
                status.synthesized = None
        return status


def _later(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if current is None:
        return candidate
    if candidate is not None and current < candidate:
        return candidate
    return current


def get_bindings(symph: Symphony, variation: Variation) -> list:
    """Symphony bindings overlaid by the variation's, one per key."""
    merged = list(symph.spec.bindings)
    for bnd in variation.bindings:
        index = next((i for i, b in enumerate(merged) if b.key == bnd.key), None)
        if index is None:
            merged.append(bnd)
        else:
            merged[index] = bnd
    seen: set = set()
    deduped = []
    for bnd in merged:
        if bnd.key in seen:
            continue
        seen.add(bnd.key)
        deduped.append(copy.deepcopy(bnd))
    return deduped


def get_synthesis_env(symph: Symphony, variation: Variation) -> list:
    """Variation environment plus symphony variables the variation does not set."""
    env = [copy.deepcopy(e) for e in variation.synthesis_env]
    names = {e.name for e in env}
    for evar in symph.spec.synthesis_env:
        if evar.name not in names:
            env.append(copy.deepcopy(evar))
            names.add(evar.name)
    return env


def coalesce_metadata(variation: Variation, existing: Composition) -> bool:
    """Copy the variation's labels and annotations onto ``existing``; True when anything changed."""
    changed = False
    if existing.labels is None:
        existing.labels = {}
    for key, value in (variation.labels or {}).items():
        if existing.labels.get(key, "") != value:
            changed = True
        existing.labels[key] = value

    if existing.annotations is None:
        existing.annotations = {}
    for key, value in (variation.annotations or {}).items():
        if existing.annotations.get(key, "") != value:
            changed = True
        existing.annotations[key] = value
    return changed