from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mesh_bugreport.errors import MalformedIdentifier

POD = "pod"
DEPLOYMENT = "deployment"
NAMESPACE = "namespace"

RESOURCE_KINDS = (POD, DEPLOYMENT, NAMESPACE)

# Roles a resource plays within one report
ROLE_TARGET = "target"
ROLE_NAMESPACE = "namespace"
ROLE_CONTROL_PLANE = "control-plane"

# ----------------------------
# Identifiers
# ----------------------------


@dataclass(frozen=True)
class ResourceRef:
    """
    A single addressable cluster object.

    Equality and hashing only consider (namespace, name); ``kind`` tells the
    collector which artifacts apply to the object.
    """

    namespace: str
    name: str
    kind: str = field(default=POD, compare=False)

    def __post_init__(self):
        if not self.namespace or not self.name:
            raise MalformedIdentifier(f"{self.namespace}/{self.name}")
        if self.kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind '{self.kind}'")

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def label(self) -> str:
        if self.kind == NAMESPACE:
            return self.namespace
        return f"{self.kind}/{self}"


def namespace_ref(namespace: str) -> ResourceRef:
    return ResourceRef(namespace=namespace, name=namespace, kind=NAMESPACE)


def parse_namespaced_name(raw: str, kind: str = POD) -> ResourceRef:
    """
    Parse '<namespace>/<name>' into a ResourceRef.

    Raises MalformedIdentifier for a missing separator, more than one
    separator, or an empty segment.
    """
    if not isinstance(raw, str):
        raise MalformedIdentifier(repr(raw))

    parts = raw.strip().split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedIdentifier(raw)

    return ResourceRef(namespace=parts[0], name=parts[1], kind=kind)


# ----------------------------
# Collection request
# ----------------------------


class Mode(str, Enum):
    EXPLICIT = "explicit"
    ALL = "all"


@dataclass
class TargetSpec:
    mode: Mode = Mode.EXPLICIT
    namespaces: list[str] = field(default_factory=list)
    deployments: list[str] = field(default_factory=list)
    pods: list[str] = field(default_factory=list)

    def __post_init__(self):
        # --all wins over anything given explicitly
        if self.mode is Mode.ALL:
            self.namespaces = []
            self.deployments = []
            self.pods = []

    @classmethod
    def all(cls) -> "TargetSpec":
        return cls(mode=Mode.ALL)


# ----------------------------
# Collected artifacts
# ----------------------------


@dataclass(frozen=True)
class ArtifactBlob:
    path: str
    content: bytes
    kind: str = ""
    source: ResourceRef | None = None
    partial: bool = False
    error: str | None = None

    def __post_init__(self):
        if self.content is None:
            raise ValueError(f"Artifact {self.path} has no content")
        if not self.path or self.path.startswith("/"):
            raise ValueError(f"Artifact path must be relative: {self.path!r}")


# ----------------------------
# Collection report
# ----------------------------


class TargetStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TargetOutcome:
    ref: ResourceRef
    role: str
    attempted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    def record_success(self, kind: str) -> None:
        self.attempted.append(kind)

    def record_failure(self, kind: str, reason: str) -> None:
        self.attempted.append(kind)
        self.failures[kind] = reason

    @property
    def status(self) -> TargetStatus:
        if self.cancelled:
            return TargetStatus.CANCELLED
        if not self.failures:
            return TargetStatus.SUCCEEDED
        if set(self.failures) >= set(self.attempted):
            return TargetStatus.FAILED
        return TargetStatus.PARTIAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.ref.kind,
            "namespace": self.ref.namespace,
            "name": self.ref.name,
            "status": self.status.value,
            "collected": [k for k in self.attempted if k not in self.failures],
            "failures": dict(self.failures),
        }


class CollectionReport:
    """
    Outcome of one run. Every requested resource appears exactly once,
    in the order it was registered.
    """

    def __init__(self):
        self._outcomes: dict[tuple[str, str, str, str], TargetOutcome] = {}
        self.cancelled = False

    @staticmethod
    def _key(ref: ResourceRef, role: str) -> tuple[str, str, str, str]:
        return (role, ref.kind, ref.namespace, ref.name)

    def register(self, ref: ResourceRef, role: str) -> TargetOutcome:
        key = self._key(ref, role)
        if key in self._outcomes:
            raise ValueError(f"{role} {ref.label} registered twice")
        outcome = TargetOutcome(ref=ref, role=role)
        self._outcomes[key] = outcome
        return outcome

    def get(self, ref: ResourceRef, role: str = ROLE_TARGET) -> TargetOutcome | None:
        return self._outcomes.get(self._key(ref, role))

    def outcomes(self, role: str | None = None) -> list[TargetOutcome]:
        return [o for o in self._outcomes.values() if role is None or o.role == role]

    def failures(self, role: str | None = None) -> list[tuple[ResourceRef, str, str]]:
        result = []
        for outcome in self.outcomes(role):
            for kind, reason in outcome.failures.items():
                result.append((outcome.ref, kind, reason))
        return result

    def counts(self, role: str | None = None) -> dict[TargetStatus, int]:
        counts = {status: 0 for status in TargetStatus}
        for outcome in self.outcomes(role):
            counts[outcome.status] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        grouped: dict[str, list[dict[str, Any]]] = {}
        for outcome in self._outcomes.values():
            grouped.setdefault(outcome.role, []).append(outcome.to_dict())
        return {"cancelled": self.cancelled, **grouped}

    def __len__(self) -> int:
        return len(self._outcomes)
