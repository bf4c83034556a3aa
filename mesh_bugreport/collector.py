import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

import yaml

from mesh_bugreport.cluster import ClusterQuery
from mesh_bugreport.errors import ClusterQueryFailure
from mesh_bugreport.model import (
    DEPLOYMENT,
    NAMESPACE,
    POD,
    ROLE_CONTROL_PLANE,
    ROLE_NAMESPACE,
    ROLE_TARGET,
    ArtifactBlob,
    CollectionReport,
    ResourceRef,
    TargetOutcome,
    namespace_ref,
)
from mesh_bugreport.resolver import DEFAULT_WORKERS, Resolution

logger = logging.getLogger(__name__)

# ----------------------------
# Artifact bundles
# ----------------------------

# (artifact kind, file name) in emission order
POD_ARTIFACTS = (
    ("manifest", "manifest.yaml"),
    ("describe", "describe.txt"),
    ("logs", "logs.log"),
    ("previous-logs", "previous-logs.log"),
    ("events", "events.yaml"),
)

DEPLOYMENT_ARTIFACTS = (
    ("manifest", "manifest.yaml"),
    ("describe", "describe.txt"),
    ("logs", "logs.log"),
    ("events", "events.yaml"),
)

NAMESPACE_ARTIFACTS = (
    ("manifest", "manifest.yaml"),
    ("resources", "resources.yaml"),
    ("events", "events.yaml"),
    ("configmaps", "configmaps.yaml"),
)

CONTROL_PLANE_ARTIFACTS = NAMESPACE_ARTIFACTS + (("mesh-config", "mesh-config.yaml"),)

ARTIFACTS = {
    POD: POD_ARTIFACTS,
    DEPLOYMENT: DEPLOYMENT_ARTIFACTS,
    NAMESPACE: NAMESPACE_ARTIFACTS,
}

# Missing for any container that never restarted; failures are not reported
ADVISORY_KINDS = {"previous-logs"}

VERSION_PATH = "cluster/version.yaml"
REPORT_PATH = "report.yaml"

FETCHERS: dict[str, Callable[[ClusterQuery, ResourceRef], bytes]] = {
    "manifest": lambda c, ref: c.fetch_manifest(ref),
    "describe": lambda c, ref: c.fetch_describe(ref),
    "logs": lambda c, ref: c.fetch_logs(ref),
    "previous-logs": lambda c, ref: c.fetch_logs(ref, previous=True),
    "events": lambda c, ref: c.fetch_events(ref),
    "resources": lambda c, ref: c.fetch_namespace_resources(ref.namespace),
    "configmaps": lambda c, ref: c.fetch_configmaps(ref.namespace),
    "mesh-config": lambda c, ref: c.fetch_mesh_config(ref.namespace),
}


def artifact_prefix(ref: ResourceRef, role: str) -> str:
    """
    Archive directory holding every artifact of one resource.
    """
    if role == ROLE_NAMESPACE:
        return f"namespaces/{ref.namespace}"
    if role == ROLE_CONTROL_PLANE:
        if ref.kind == NAMESPACE:
            return f"control-plane/{ref.namespace}"
        return f"control-plane/{ref.namespace}/pods/{ref.name}"
    return f"targets/{ref.namespace}/{ref.kind}s/{ref.name}"


@dataclass
class Job:
    outcome: TargetOutcome
    artifacts: tuple[tuple[str, str], ...]

    @property
    def ref(self) -> ResourceRef:
        return self.outcome.ref

    @property
    def prefix(self) -> str:
        return artifact_prefix(self.outcome.ref, self.outcome.role)


class Collection:
    """
    One-shot stream of artifacts together with the report it fills in.

    The report is complete once the stream is exhausted.
    """

    def __init__(
        self,
        blobs: Iterator[ArtifactBlob],
        report: CollectionReport,
        warnings: list[str],
    ):
        self._blobs = blobs
        self._consumed = False
        self.report = report
        self.warnings = warnings

    def __iter__(self) -> Iterator[ArtifactBlob]:
        if self._consumed:
            raise RuntimeError(
                "A collection can only be iterated once; call collect() again"
            )
        self._consumed = True
        return self._blobs


class Collector:
    def __init__(
        self,
        cluster: ClusterQuery,
        max_workers: int = DEFAULT_WORKERS,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ):
        self.cluster = cluster
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()
        self.deadline = deadline

    def cancelled(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def collect(
        self, resolution: Resolution, control_plane_namespace: str
    ) -> Collection:
        report = CollectionReport()
        warnings: list[str] = []

        jobs: list[Job] = []
        cp_ref = namespace_ref(control_plane_namespace)
        cp_outcome = report.register(cp_ref, ROLE_CONTROL_PLANE)
        jobs.append(Job(cp_outcome, CONTROL_PLANE_ARTIFACTS))
        for namespace in resolution.namespaces:
            outcome = report.register(namespace_ref(namespace), ROLE_NAMESPACE)
            jobs.append(Job(outcome, NAMESPACE_ARTIFACTS))
        for ref in resolution.targets:
            outcome = report.register(ref, ROLE_TARGET)
            jobs.append(Job(outcome, ARTIFACTS[ref.kind]))

        blobs = self._stream(jobs, cp_outcome, report, warnings)
        return Collection(blobs, report, warnings)

    # ----------------------------
    # Streaming
    # ----------------------------

    def _stream(
        self,
        jobs: list[Job],
        cp_outcome: TargetOutcome,
        report: CollectionReport,
        warnings: list[str],
    ) -> Iterator[ArtifactBlob]:
        if not self.cancelled():
            yield self._version_blob(warnings)

        yield from self._run_jobs(self._expand(jobs, cp_outcome, report))

        # Only skipped work marks the run cancelled
        report.cancelled = any(o.cancelled for o in report.outcomes())
        yield ArtifactBlob(
            path=REPORT_PATH,
            content=yaml.safe_dump(report.to_dict(), sort_keys=False).encode("utf-8"),
            kind="report",
        )

    def _expand(
        self, jobs: list[Job], cp_outcome: TargetOutcome, report: CollectionReport
    ) -> Iterator[Job]:
        """
        Control-plane namespace first, then its pods, then user namespaces
        and targets. The control-plane pods are listed lazily, before the
        namespace job is handed to a worker.
        """
        namespace = cp_outcome.ref.namespace
        if self.cancelled():
            pods = []
        else:
            try:
                pods = sorted(self.cluster.list_pods(namespace))
            except ClusterQueryFailure as e:
                logger.debug("Listing control-plane pods failed: %s", e)
                if not self.cancelled():
                    cp_outcome.record_failure("pods", e.reason)
                pods = []
            else:
                cp_outcome.record_success("pods")

        yield jobs[0]
        for pod in pods:
            ref = ResourceRef(namespace=namespace, name=pod, kind=POD)
            outcome = report.register(ref, ROLE_CONTROL_PLANE)
            yield Job(outcome, POD_ARTIFACTS)

        yield from jobs[1:]

    def _run_jobs(self, jobs: Iterable[Job]) -> Iterator[ArtifactBlob]:
        """
        Run jobs on the worker pool and yield their artifacts in submission
        order. At most two jobs per worker are in flight at any time.
        """
        window = self.max_workers * 2
        pending: deque[Future] = deque()
        job_iter = iter(jobs)
        pool = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="collect"
        )

        def fill():
            while len(pending) < window:
                job = next(job_iter, None)
                if job is None:
                    return
                pending.append(pool.submit(self._run_job, job))

        try:
            fill()
            while pending:
                blobs = pending.popleft().result()
                fill()
                yield from blobs
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _run_job(self, job: Job) -> list[ArtifactBlob]:
        outcome = job.outcome
        blobs: list[ArtifactBlob] = []

        for kind, filename in job.artifacts:
            if self.cancelled():
                outcome.cancelled = True
                logger.debug("Cancelled before %s of %s", kind, outcome.ref.label)
                break

            path = f"{job.prefix}/{filename}"
            try:
                content = FETCHERS[kind](self.cluster, job.ref)
            except ClusterQueryFailure as e:
                if self.cancelled():
                    outcome.cancelled = True
                    logger.debug("Cancelled during %s of %s", kind, outcome.ref.label)
                    break
                if kind in ADVISORY_KINDS:
                    label = outcome.ref.label
                    logger.debug("Skipping %s for %s: %s", kind, label, e.reason)
                    continue
                outcome.record_failure(kind, e.reason)
                blobs.append(
                    ArtifactBlob(
                        path=path,
                        content=b"",
                        kind=kind,
                        source=job.ref,
                        partial=True,
                        error=e.reason,
                    )
                )
                continue

            outcome.record_success(kind)
            blobs.append(
                ArtifactBlob(
                    path=path, content=content or b"", kind=kind, source=job.ref
                )
            )

        return blobs

    def _version_blob(self, warnings: list[str]) -> ArtifactBlob:
        try:
            content = self.cluster.fetch_version()
        except ClusterQueryFailure as e:
            warnings.append(f"Unable to get cluster version: {e.reason}")
            return ArtifactBlob(
                path=VERSION_PATH,
                content=b"",
                kind="version",
                partial=True,
                error=e.reason,
            )
        return ArtifactBlob(path=VERSION_PATH, content=content, kind="version")
