import logging
import os
import sys
import threading
import time
from typing import TextIO

from mesh_bugreport.archive import ArchiveHandle, open_archive
from mesh_bugreport.cluster import ClusterQuery
from mesh_bugreport.collector import Collection, Collector
from mesh_bugreport.config import BugReportConfig
from mesh_bugreport.errors import ArchiveIOFailure, BugReportError, NoTargetsResolved
from mesh_bugreport.model import ROLE_CONTROL_PLANE, TargetStatus
from mesh_bugreport.output import error, print_summary, warn
from mesh_bugreport.resolver import resolve

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_NO_TARGETS = 2
EXIT_CANCELLED = 130


class BugReport:
    """
    Runs one bug-report: resolve targets, collect artifacts, stream them
    into the archive and summarize the outcome.
    """

    def __init__(
        self,
        config: BugReportConfig,
        cluster: ClusterQuery,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.config = config
        self.cluster = cluster
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self.cancel_event = cancel_event or threading.Event()

    def run(self) -> int:
        start = time.monotonic()

        resolution = resolve(
            self.config.target_spec(),
            self.cluster,
            max_workers=self.config.workers,
            cancel_event=self.cancel_event,
        )
        for message in resolution.warnings:
            warn(self.stderr, message)

        no_targets = resolution.empty
        if no_targets:
            warn(
                self.stderr,
                f"{NoTargetsResolved()}, collecting control-plane data only",
            )
        logger.debug(
            "Resolved %d target(s) and %d namespace(s)",
            len(resolution.targets),
            len(resolution.namespaces),
        )

        if self.cancel_event.is_set():
            error(self.stderr, "Bug report cancelled before collection started")
            return EXIT_CANCELLED

        collector = Collector(
            self.cluster,
            max_workers=self.config.workers,
            cancel_event=self.cancel_event,
            deadline=self.config.deadline(start),
        )
        collection = collector.collect(resolution, self.config.mesh_namespace)

        try:
            archive_path = self.write_archive(collection, self.config.output_path())
        except BugReportError as e:
            error(self.stderr, str(e))
            return EXIT_FAILURE

        for message in collection.warnings:
            warn(self.stderr, message)

        report = collection.report
        if no_targets and self._control_plane_failed(collection):
            self._remove(archive_path)
            failure = NoTargetsResolved(
                "No targets resolved and control-plane collection failed"
            )
            error(self.stderr, str(failure))
            return EXIT_FAILURE

        print_summary(
            report,
            archive_path,
            time.monotonic() - start,
            self.stdout,
            control_plane_namespace=self.config.mesh_namespace,
        )
        return EXIT_NO_TARGETS if no_targets else EXIT_OK

    def write_archive(self, collection: Collection, path: str) -> str:
        """
        Drain the collection into a new archive at path. This thread is the
        only writer. If draining stops for any reason, including an interrupt,
        the partial file is removed.
        """
        handle = open_archive(path)
        blobs = iter(collection)
        try:
            for blob in blobs:
                handle.write(blob)
            handle.close()
        except BaseException:
            self._discard(handle)
            raise
        finally:
            blobs.close()
        return handle.path

    @staticmethod
    def _control_plane_failed(collection: Collection) -> bool:
        outcomes = collection.report.outcomes(ROLE_CONTROL_PLANE)
        dead = (TargetStatus.FAILED, TargetStatus.CANCELLED)
        return all(o.status in dead for o in outcomes)

    def _discard(self, handle: ArchiveHandle) -> None:
        try:
            handle.close()
        except ArchiveIOFailure as e:
            logger.debug("Ignoring close failure on aborted archive: %s", e)
        self._remove(handle.path)

    @staticmethod
    def _remove(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
