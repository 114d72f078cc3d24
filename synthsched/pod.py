"""Construction of the pods that run synthesizers."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from synthsched.model import Composition, Synthesizer, _Meta

COMPOSITION_NAME_LABEL = "eno.azure.io/composition-name"
COMPOSITION_NAMESPACE_LABEL = "eno.azure.io/composition-namespace"
SYNTHESIS_ID_LABEL = "eno.azure.io/synthesis-uuid"
MANAGER_LABEL_KEY = "app.kubernetes.io/managed-by"
MANAGER_LABEL_VALUE = "eno"

_PREFERRED = "preferredDuringSchedulingIgnoredDuringExecution"
_REQUIRED = "requiredDuringSchedulingIgnoredDuringExecution"
_SHARED_MOUNT = {"name": "sharedfs", "mountPath": "/eno"}


@dataclass
class Pod(_Meta):
    """A pod; ``spec`` and ``status`` keep the Kubernetes field names."""

    spec: dict = field(default_factory=dict)
    status: dict = field(default_factory=dict)


@dataclass
class Config:
    """Settings applied to every synthesizer pod."""

    executor_image: str = ""
    pod_namespace: str = ""
    pod_service_account: str = ""
    taint_toleration_key: str = ""
    taint_toleration_value: str = ""
    node_affinity_key: str = ""
    node_affinity_value: str = ""


def new_pod(cfg: Config, comp: Composition, syn: Synthesizer) -> Pod:
    """Build the pod that runs the in-flight synthesis of ``comp`` with ``syn``."""
    synthesis_uuid = comp.status.in_flight_synthesis.uuid
    overrides = syn.spec.pod_overrides

    labels = {
        COMPOSITION_NAME_LABEL: comp.name,
        COMPOSITION_NAMESPACE_LABEL: comp.namespace,
        SYNTHESIS_ID_LABEL: synthesis_uuid,
        MANAGER_LABEL_KEY: MANAGER_LABEL_VALUE,
    }
    labels.update(overrides.labels or {})
    annotations = dict(overrides.annotations or {})

    env = [
        {"name": "COMPOSITION_NAME", "value": comp.name},
        {"name": "COMPOSITION_NAMESPACE", "value": comp.namespace},
        {"name": "SYNTHESIS_UUID", "value": synthesis_uuid},
        {"name": "IMAGE", "value": syn.spec.image},
    ]
    env.extend({"name": ev.name, "value": ev.value} for ev in filter_env(env, comp.spec.synthesis_env))

    affinity: dict = {
        "podAntiAffinity": {
            _PREFERRED: [{
                "weight": 100,
                "podAffinityTerm": {
                    "topologyKey": "kubernetes.io/hostname",
                    "labelSelector": {"matchLabels": {MANAGER_LABEL_KEY: MANAGER_LABEL_VALUE}},
                },
            }],
        },
    }

    spec: dict = {
        "serviceAccountName": cfg.pod_service_account,
        "restartPolicy": "OnFailure",
        "affinity": affinity,
        "initContainers": [{
            "name": "synth-installer",
            "image": cfg.executor_image,
            "command": ["/eno-controller", "install-executor"],
            "volumeMounts": [dict(_SHARED_MOUNT)],
        }],
        "containers": [{
            "name": "executor",
            "image": syn.spec.image,
            "command": ["/eno/executor"],
            "volumeMounts": [dict(_SHARED_MOUNT)],
            "resources": copy.deepcopy(overrides.resources or {}),
            "env": env,
            "securityContext": {
                "allowPrivilegeEscalation": False,
                "readOnlyRootFilesystem": True,
                "runAsUser": 65532,
                "runAsGroup": 65532,
                "runAsNonRoot": True,
                "capabilities": {"drop": ["ALL"]},
                "seccompProfile": {"type": "RuntimeDefault"},
            },
        }],
        "volumes": [{"name": "sharedfs", "emptyDir": {"medium": "Memory"}}],
        "tolerations": [],
    }

    if cfg.taint_toleration_key:
        toleration = {"key": cfg.taint_toleration_key, "operator": "Exists", "effect": "NoSchedule"}
        if cfg.taint_toleration_value:
            toleration["operator"] = "Equal"
            toleration["value"] = cfg.taint_toleration_value
        spec["tolerations"].append(toleration)

    if cfg.node_affinity_key:
        expr: dict = {"key": cfg.node_affinity_key, "operator": "Exists"}
        if cfg.node_affinity_value:
            expr["values"] = [cfg.node_affinity_value]
            expr["operator"] = "In"
        affinity["nodeAffinity"] = {_REQUIRED: {"nodeSelectorTerms": [{"matchExpressions": [expr]}]}}

    _merge_affinity_overrides(affinity, overrides.affinity)

    return Pod(
        generate_name="synthesis-",
        namespace=cfg.pod_namespace,
        labels=labels,
        annotations=annotations,
        spec=spec,
    )


def _merge_affinity_overrides(affinity: dict, override) -> None:
    if override is None:
        return
    if override.get("podAffinity") is not None:
        affinity["podAffinity"] = copy.deepcopy(override["podAffinity"])

    anti = override.get("podAntiAffinity")
    if anti is not None:
        own = affinity["podAntiAffinity"]
        own[_PREFERRED].extend(copy.deepcopy(anti.get(_PREFERRED) or []))
        required = anti.get(_REQUIRED)
        if required is None:
            own.pop(_REQUIRED, None)
        else:
            own[_REQUIRED] = copy.deepcopy(required)

    node = override.get("nodeAffinity")
    if node is not None:
        # Terms are only merged when the configuration set a node affinity of its own
        if affinity.get("nodeAffinity") is not None:
            terms = (node.get(_REQUIRED) or {}).get("nodeSelectorTerms") or []
            affinity["nodeAffinity"][_REQUIRED]["nodeSelectorTerms"].extend(copy.deepcopy(terms))
    else:
        affinity.pop("nodeAffinity", None)


def filter_env(reserved: list, env: list) -> list:
    """Variables of ``env`` whose names do not appear in ``reserved``."""
    names = {r["name"] for r in reserved}
    return [ev for ev in env if ev.name not in names]


def find_container_image(pod: Pod) -> str:
    """Image of the executor container, or an empty string."""
    return next(
        (c.get("image", "") for c in pod.spec.get("containers") or [] if c.get("name") == "executor"),
        "",
    )