import logging
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from mesh_bugreport.cluster import MONITORED_BY_LABEL, ClusterQuery
from mesh_bugreport.errors import ClusterQueryFailure, MalformedIdentifier
from mesh_bugreport.model import (
    DEPLOYMENT,
    POD,
    Mode,
    ResourceRef,
    TargetSpec,
    parse_namespaced_name,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8


@dataclass
class Resolution:
    """
    Resolved targets plus the non-fatal problems met on the way.
    """

    targets: list[ResourceRef] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.targets and not self.namespaces


def dedupe(refs: Iterable[ResourceRef]) -> list[ResourceRef]:
    """
    Drop repeated (namespace, name) pairs, keeping the first occurrence.
    """
    return list(dict.fromkeys(refs))


def _parse_all(
    raw_items: list[str], kind: str, label: str, warnings: list[str]
) -> list[ResourceRef]:
    refs = []
    for raw in raw_items:
        try:
            refs.append(parse_namespaced_name(raw, kind=kind))
        except MalformedIdentifier:
            warnings.append(f"{label} name {raw} is not namespaced, skipping it")
    return refs


def resolve_explicit(spec: TargetSpec) -> Resolution:
    warnings: list[str] = []
    pods = _parse_all(spec.pods, POD, "Pod", warnings)
    deployments = _parse_all(spec.deployments, DEPLOYMENT, "Deployment", warnings)

    cleaned = (ns.strip() for ns in spec.namespaces if ns and ns.strip())
    namespaces = list(dict.fromkeys(cleaned))

    return Resolution(
        targets=dedupe(pods + deployments),
        namespaces=namespaces,
        warnings=warnings,
    )


def resolve_all(
    cluster: ClusterQuery,
    max_workers: int = DEFAULT_WORKERS,
    label_selector: str = MONITORED_BY_LABEL,
    cancel_event: threading.Event | None = None,
) -> Resolution:
    """
    Discover every pod in every namespace monitored by the mesh.

    A namespace whose pods cannot be listed contributes nothing and is
    reported as a warning. Output is namespace-major, pod-minor. Once
    cancel_event is set, namespaces not yet listed are skipped.
    """
    cancel_event = cancel_event or threading.Event()
    resolution = Resolution()
    if cancel_event.is_set():
        return resolution

    try:
        namespaces = sorted(set(cluster.list_namespaces(label_selector)))
    except ClusterQueryFailure as e:
        resolution.warnings.append(f"Unable to list mesh namespaces: {e.reason}")
        return resolution

    resolution.namespaces = namespaces
    if not namespaces:
        return resolution

    def list_pods(namespace: str) -> tuple[str, list[str], str | None]:
        if cancel_event.is_set():
            return namespace, [], None
        try:
            return namespace, sorted(cluster.list_pods(namespace)), None
        except ClusterQueryFailure as e:
            return namespace, [], e.reason

    workers = max(1, min(max_workers, len(namespaces)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        listed = list(pool.map(list_pods, namespaces))

    refs = []
    for namespace, pods, error in listed:
        if error is not None:
            resolution.warnings.append(
                f"Unable to get pods from namespace {namespace}: {error}"
            )
            continue
        logger.debug("Namespace %s: %d pod(s)", namespace, len(pods))
        refs.extend(ResourceRef(namespace, pod, kind=POD) for pod in pods)

    resolution.targets = dedupe(refs)
    return resolution


def resolve(
    spec: TargetSpec,
    cluster: ClusterQuery,
    max_workers: int = DEFAULT_WORKERS,
    cancel_event: threading.Event | None = None,
) -> Resolution:
    if spec.mode is Mode.ALL:
        return resolve_all(cluster, max_workers=max_workers, cancel_event=cancel_event)
    return resolve_explicit(spec)
