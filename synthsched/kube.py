"""A small in-memory object store with the semantics the controllers rely on."""

from __future__ import annotations

import copy
import itertools
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

COMPOSITIONS = "compositions.eno.azure.io"
SYNTHESIZERS = "synthesizers.eno.azure.io"
SYMPHONIES = "symphonies.eno.azure.io"
PODS = "pods"

NAMESPACE_TERMINATING_CAUSE = "NamespaceTerminating"

_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_MISSING = object()


class ApiError(Exception):
    """Base class of errors returned by the object store."""


class NotFoundError(ApiError):
    def __init__(self, kind: str, name: str):
        super().__init__(f'{kind} "{name}" not found')
        self.kind = kind
        self.name = name


class ConflictError(ApiError):
    """The write raced with another writer or the object already exists."""


class InvalidError(ApiError):
    """The request could not be applied, e.g. a failed patch test."""


class ForbiddenError(ApiError):
    def __init__(self, message: str, causes: tuple = ()):
        super().__init__(message)
        self.causes = tuple(causes)


@dataclass(frozen=True)
class Result:
    requeue_after: timedelta = timedelta(0)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryClient:
    """Stores objects by kind, namespace and name, handing out copies."""

    def __init__(self):
        self._objects: dict = {}
        self._versions = itertools.count(1)
        self.terminating_namespaces: set = set()

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _stored(self, kind: str, name: str, namespace: str):
        try:
            return self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(kind, name) from None

    def get(self, kind: str, name: str, namespace: str = ""):
        return copy.deepcopy(self._stored(kind, name, namespace))

    def list(self, kind: str, namespace: Optional[str] = None, labels: Optional[dict] = None) -> list:
        found = [
            obj for (k, ns, _), obj in self._objects.items()
            if k == kind
            and (namespace is None or ns == namespace)
            and all(obj.labels.get(key) == value for key, value in (labels or {}).items())
        ]
        found.sort(key=lambda o: (o.namespace, o.name))
        return [copy.deepcopy(o) for o in found]

    def create(self, kind: str, obj) -> None:
        if obj.namespace in self.terminating_namespaces:
            raise ForbiddenError(
                f"unable to create new content in namespace {obj.namespace} because it is being terminated",
                causes=(NAMESPACE_TERMINATING_CAUSE,),
            )
        if not obj.name:
            if not obj.generate_name:
                raise InvalidError("name or generateName is required")
            obj.name = obj.generate_name + "".join(random.choices(_NAME_ALPHABET, k=5))
        key = (kind, obj.namespace, obj.name)
        if key in self._objects:
            raise ConflictError(f'{kind} "{obj.name}" already exists')
        obj.uid = obj.uid or str(uuid.uuid4())
        obj.generation = obj.generation or 1
        obj.creation_timestamp = obj.creation_timestamp or _now()
        obj.resource_version = self._next_version()
        self._objects[key] = copy.deepcopy(obj)

    def update(self, kind: str, obj) -> None:
        stored = self._stored(kind, obj.name, obj.namespace)
        if obj.resource_version and obj.resource_version != stored.resource_version:
            raise ConflictError(f'{kind} "{obj.name}": the object has been modified')
        if hasattr(stored, "status"):
            obj.status = copy.deepcopy(stored.status)
        generation = max(obj.generation, stored.generation)
        if hasattr(stored, "spec") and obj.spec != stored.spec:
            generation += 1
        obj.generation = generation
        obj.uid = stored.uid
        obj.creation_timestamp = stored.creation_timestamp
        obj.deletion_timestamp = stored.deletion_timestamp
        obj.resource_version = self._next_version()
        key = (kind, obj.namespace, obj.name)
        if obj.deletion_timestamp is not None and not obj.finalizers:
            del self._objects[key]
            return
        self._objects[key] = copy.deepcopy(obj)

    def delete(self, kind: str, obj) -> None:
        stored = self._stored(kind, obj.name, obj.namespace)
        if obj.uid and obj.uid != stored.uid:
            raise ConflictError(f'{kind} "{obj.name}": uid precondition failed')
        key = (kind, obj.namespace, obj.name)
        if not stored.finalizers:
            del self._objects[key]
            return
        if stored.deletion_timestamp is None:
            stored.deletion_timestamp = _now()
            stored.resource_version = self._next_version()

    def patch_status(self, kind: str, obj, patch) -> None:
        """Apply a JSON patch (a list of operations) or replace the status with ``patch``."""
        stored = self._stored(kind, obj.name, obj.namespace)
        if isinstance(patch, list):
            status_type = type(stored.status)
            doc = apply_json_patch({"status": stored.status.to_json()}, patch)
            new_status = status_type.from_json(doc.get("status"))
        else:
            new_status = copy.deepcopy(patch)
        stored.status = new_status
        stored.resource_version = self._next_version()
        obj.status = copy.deepcopy(new_status)
        obj.resource_version = stored.resource_version


def _parse_pointer(path: str) -> list:
    if path == "":
        return []
    if not path.startswith("/"):
        raise InvalidError(f"invalid JSON pointer {path!r}")
    return [t.replace("~1", "/").replace("~0", "~") for t in path[1:].split("/")]


def _lookup(doc: Any, tokens: list) -> Any:
    for token in tokens:
        if isinstance(doc, dict):
            if token not in doc:
                return _MISSING
            doc = doc[token]
        elif isinstance(doc, list):
            try:
                doc = doc[int(token)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return doc


def _norm(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned = {k: _norm(v) for k, v in value.items()}
        return {k: v for k, v in cleaned.items() if v is not None}
    if isinstance(value, list):
        return [_norm(v) for v in value] or None
    return value


def _container(doc: Any, tokens: list, path: str) -> Any:
    parent = _lookup(doc, tokens[:-1])
    if parent is _MISSING or not isinstance(parent, (dict, list)):
        raise InvalidError(f"path {path!r} does not exist")
    return parent


def apply_json_patch(document: Any, patch: list) -> Any:
    """Apply RFC 6902 operations to a copy of ``document`` and return it."""
    doc = copy.deepcopy(document)
    for op in patch:
        kind, path = op.get("op"), op.get("path", "")
        tokens = _parse_pointer(path)
        if kind == "test":
            actual = _lookup(doc, tokens)
            actual = None if actual is _MISSING else actual
            if _norm(actual) != _norm(op.get("value")):
                raise InvalidError(f"test operation failed at {path!r}")
            continue
        if kind not in ("add", "replace", "remove"):
            raise InvalidError(f"unsupported patch operation {kind!r}")
        if not tokens:
            if kind == "remove":
                raise InvalidError("cannot remove the document root")
            doc = copy.deepcopy(op.get("value"))
            continue
        parent = _container(doc, tokens, path)
        last = tokens[-1]
        if isinstance(parent, dict):
            if kind == "remove":
                if last not in parent:
                    raise InvalidError(f"path {path!r} does not exist")
                del parent[last]
            else:
                parent[last] = copy.deepcopy(op.get("value"))
            continue
        if last == "-" and kind == "add":
            parent.append(copy.deepcopy(op.get("value")))
            continue
        try:
            index = int(last)
        except ValueError:
            raise InvalidError(f"invalid array index in {path!r}") from None
        limit = len(parent) if kind == "add" else len(parent) - 1
        if index < 0 or index > limit:
            raise InvalidError(f"array index out of range in {path!r}")
        if kind == "add":
            parent.insert(index, copy.deepcopy(op.get("value")))
        elif kind == "replace":
            parent[index] = copy.deepcopy(op.get("value"))
        else:
            del parent[index]
    return doc