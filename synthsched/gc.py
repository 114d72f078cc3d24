"""Deletes synthesizer pods that are finished, stale or orphaned."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from synthsched.kube import COMPOSITIONS, PODS, SYNTHESIZERS, ApiError, NotFoundError, Result
from synthsched.model import Composition
from synthsched.pod import (
    COMPOSITION_NAME_LABEL,
    COMPOSITION_NAMESPACE_LABEL,
    SYNTHESIS_ID_LABEL,
    Pod,
    find_container_image,
)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_GRACE_PERIOD = timedelta(seconds=1)

log = logging.getLogger(__name__)


class PodGarbageCollector:
    """Removes synthesis pods that no longer serve an active synthesis."""

    def __init__(
        self,
        client,
        creation_timeout: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.creation_timeout = creation_timeout
        self._now = clock or (lambda: datetime.now(timezone.utc))

    def reconcile(self, name: str, namespace: str) -> Result:
        try:
            pod = self.client.get(PODS, name, namespace)
        except NotFoundError:
            return Result()
        if pod.deletion_timestamp is not None:
            return Result()
        if not pod.labels:
            log.warning("saw pod %s/%s without any labels", pod.namespace, pod.name)
            return Result()

        now = self._now()

        # Avoid waiting for the lease to expire on broken nodes
        delta = time_waiting_for_kubelet(pod, now)
        if delta > timedelta(0):
            if delta < self.creation_timeout:
                return Result(requeue_after=self.creation_timeout - delta)
            return self._collect(pod, "ContainerCreationTimeout")

        try:
            comp = self.client.get(
                COMPOSITIONS,
                pod.labels.get(COMPOSITION_NAME_LABEL, ""),
                pod.labels.get(COMPOSITION_NAMESPACE_LABEL, ""),
            )
        except NotFoundError:
            comp = None
        if comp is None or comp.deletion_timestamp is not None:
            return self._collect(pod, "CompositionDeleted")

        try:
            synth = self.client.get(SYNTHESIZERS, comp.spec.synthesizer.name)
        except NotFoundError:
            return self._collect(pod, "SynthesizerDeleted")

        # Brand new pods may not be reflected consistently across caches yet
        created = pod.creation_timestamp or _ZERO_TIME
        wait = _GRACE_PERIOD - (now - created)
        if wait > timedelta(0):
            return Result(requeue_after=wait)

        image = find_container_image(pod)
        if image and image != synth.spec.image:
            return self._collect(pod, "ImageChanged")

        pod_uuid = pod.labels.get(SYNTHESIS_ID_LABEL, "")
        in_flight = comp.status.in_flight_synthesis
        if in_flight is not None:
            if in_flight.canceled is not None:
                return self._collect(pod, "Timeout")
            if in_flight.uuid != pod_uuid:
                return self._collect(pod, "Superseded")
            return Result(requeue_after=timedelta(seconds=1))

        current = comp.status.current_synthesis
        if current is not None and current.uuid == pod_uuid:
            return self._collect(pod, "Success")

        return self._collect(pod, "Orphaned")

    def _collect(self, pod: Pod, reason: str) -> Result:
        log.info("collecting synthesizer pod %s/%s: %s", pod.namespace, pod.name, reason)
        self.delete_pod(pod)
        return Result()

    def delete_pod(self, pod: Pod) -> None:
        """Delete ``pod`` provided it is still the same object."""
        statuses = pod.status.get("containerStatuses") or []
        restarts = statuses[0].get("restartCount", 0) if statuses else None
        try:
            self.client.delete(PODS, pod)
        except ApiError as err:
            raise ApiError(f"deleting pod: {err}") from err
        created = pod.creation_timestamp or _ZERO_TIME
        latency_ms = int((self._now() - created).total_seconds() * 1000)
        log.info("deleted synthesizer pod %s/%s (restarts=%s, latency=%dms)",
                 pod.namespace, pod.name, restarts, latency_ms)


def time_waiting_for_kubelet(pod: Pod, now: datetime) -> timedelta:
    """How long a scheduled pod has gone without any container status."""
    if pod.status.get("containerStatuses"):
        return timedelta(0)
    for cond in pod.status.get("conditions") or []:
        if cond.get("type") != "PodScheduled":
            continue
        if cond.get("status") == "False":
            return timedelta(0)
        return now - (cond.get("lastTransitionTime") or _ZERO_TIME)
    return timedelta(0)


def synthesis_age(comp: Composition, now: Optional[datetime] = None) -> Optional[int]:
    """Milliseconds since the in-flight synthesis was initialized, or None."""
    syn = comp.status.in_flight_synthesis
    if syn is None or syn.initialized is None:
        return None
    now = now or datetime.now(timezone.utc)
    return int((now - syn.initialized).total_seconds() * 1000)