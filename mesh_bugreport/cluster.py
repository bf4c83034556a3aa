import json
import logging
import subprocess
import threading
import time
from typing import Any

from mesh_bugreport.errors import ClusterQueryFailure
from mesh_bugreport.model import DEPLOYMENT, NAMESPACE, POD, ResourceRef

logger = logging.getLogger(__name__)

MONITORED_BY_LABEL = "openservicemesh.io/monitored-by"

DEFAULT_REQUEST_TIMEOUT = 30  # seconds
DEFAULT_RETRIES = 2
RETRY_DELAY_SECONDS = 1
CANCEL_POLL_SECONDS = 0.2

_EVENT_KINDS = {POD: "Pod", DEPLOYMENT: "Deployment"}


class ClusterQuery:
    """
    Read-only view of the cluster used by the resolver and the collector.

    Every method raises ClusterQueryFailure when the cluster cannot answer.
    Implementations must be safe to call from several worker threads.
    """

    def list_namespaces(self, label_selector: str) -> list[str]:
        raise NotImplementedError

    def list_pods(self, namespace: str) -> list[str]:
        raise NotImplementedError

    def fetch_manifest(self, ref: ResourceRef) -> bytes:
        raise NotImplementedError

    def fetch_describe(self, ref: ResourceRef) -> bytes:
        raise NotImplementedError

    def fetch_logs(self, ref: ResourceRef, previous: bool = False) -> bytes:
        raise NotImplementedError

    def fetch_events(self, ref: ResourceRef) -> bytes:
        raise NotImplementedError

    def fetch_namespace_resources(self, namespace: str) -> bytes:
        raise NotImplementedError

    def fetch_configmaps(self, namespace: str) -> bytes:
        raise NotImplementedError

    def fetch_mesh_config(self, namespace: str) -> bytes:
        raise NotImplementedError

    def fetch_version(self) -> bytes:
        raise NotImplementedError


# ----------------------------
# kubectl-backed implementation
# ----------------------------


class KubectlCluster(ClusterQuery):
    def __init__(
        self,
        kubectl: str = "kubectl",
        kubeconfig: str | None = None,
        context: str | None = None,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        deadline: float | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.context = context
        self.request_timeout = request_timeout
        self.retries = retries
        # Absolute time.monotonic() value after which no call is started
        self.deadline = deadline
        # Setting it kills running kubectl processes and stops new ones
        self.cancel_event = cancel_event or threading.Event()

    def command(self, args: list[str]) -> list[str]:
        cmd = [self.kubectl, f"--request-timeout={self.request_timeout}s"]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--context", self.context]
        return cmd + args

    def _timeout(self, command: str) -> float:
        timeout = float(self.request_timeout + 5)
        if self.deadline is None:
            return timeout
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise ClusterQueryFailure(command, "deadline exceeded")
        return min(timeout, remaining)

    def _communicate(
        self, cmd: list[str], printable: str, timeout: float
    ) -> tuple[int, bytes, bytes]:
        """
        Wait for one kubectl process while polling the cancel event. The
        process is killed on cancellation and on timeout.
        """
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        expires = time.monotonic() + timeout
        while True:
            remaining = expires - time.monotonic()
            if self.cancel_event.is_set() or remaining <= 0:
                proc.kill()
                proc.communicate()
                if self.cancel_event.is_set():
                    raise ClusterQueryFailure(printable, "cancelled")
                raise subprocess.TimeoutExpired(cmd, timeout)
            try:
                stdout, stderr = proc.communicate(
                    timeout=min(CANCEL_POLL_SECONDS, remaining)
                )
            except subprocess.TimeoutExpired:
                continue
            return proc.returncode, stdout, stderr

    def run(self, args: list[str]) -> bytes:
        cmd = self.command(args)
        printable = " ".join(["kubectl"] + args)
        last_err = ""

        for attempt in range(1, max(1, self.retries) + 1):
            if self.cancel_event.is_set():
                raise ClusterQueryFailure(printable, "cancelled")
            timeout = self._timeout(printable)
            logger.debug(
                "Running: %s (attempt %d, timeout %.0fs)", printable, attempt, timeout
            )
            try:
                returncode, stdout, stderr = self._communicate(cmd, printable, timeout)
            except FileNotFoundError:
                reason = f"{self.kubectl} not found in PATH"
                raise ClusterQueryFailure(printable, reason) from None
            except subprocess.TimeoutExpired:
                last_err = f"timed out after {timeout:.0f}s"
                logger.debug("%s: %s", printable, last_err)
                self.cancel_event.wait(RETRY_DELAY_SECONDS * attempt)
                continue

            if returncode != 0:
                message = stderr.decode("utf-8", errors="replace").strip()
                reason = message or f"exit status {returncode}"
                raise ClusterQueryFailure(printable, reason)
            return stdout

        raise ClusterQueryFailure(printable, last_err)

    def _names(self, args: list[str]) -> list[str]:
        raw = self.run(args + ["-o", "json"])
        try:
            data: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as e:
            command = " ".join(["kubectl"] + args)
            raise ClusterQueryFailure(command, f"invalid JSON output: {e}") from e
        names = [item.get("metadata", {}).get("name") for item in data.get("items", [])]
        return sorted(n for n in names if n)

    def list_namespaces(self, label_selector: str) -> list[str]:
        return self._names(["get", "namespaces", "-l", label_selector])

    def list_pods(self, namespace: str) -> list[str]:
        return self._names(["get", "pods", "-n", namespace])

    def fetch_manifest(self, ref: ResourceRef) -> bytes:
        if ref.kind == NAMESPACE:
            return self.run(["get", "namespace", ref.namespace, "-o", "yaml"])
        return self.run(["get", ref.kind, ref.name, "-n", ref.namespace, "-o", "yaml"])

    def fetch_describe(self, ref: ResourceRef) -> bytes:
        if ref.kind == NAMESPACE:
            return self.run(["describe", "namespace", ref.namespace])
        return self.run(["describe", ref.kind, ref.name, "-n", ref.namespace])

    def fetch_logs(self, ref: ResourceRef, previous: bool = False) -> bytes:
        if ref.kind == NAMESPACE:
            raise ValueError("Namespaces have no logs")
        args = [
            "logs",
            f"{ref.kind}/{ref.name}",
            "-n",
            ref.namespace,
            "--all-containers",
            "--timestamps",
        ]
        if previous:
            args.append("--previous")
        return self.run(args)

    def fetch_events(self, ref: ResourceRef) -> bytes:
        args = ["get", "events", "-n", ref.namespace]
        if ref.kind != NAMESPACE:
            kind = _EVENT_KINDS[ref.kind]
            selector = f"involvedObject.name={ref.name},involvedObject.kind={kind}"
            args += ["--field-selector", selector]
        return self.run(args + ["-o", "yaml"])

    def fetch_namespace_resources(self, namespace: str) -> bytes:
        return self.run(["get", "all", "-n", namespace, "-o", "yaml"])

    def fetch_configmaps(self, namespace: str) -> bytes:
        return self.run(["get", "configmaps", "-n", namespace, "-o", "yaml"])

    def fetch_mesh_config(self, namespace: str) -> bytes:
        return self.run(["get", "meshconfigs", "-n", namespace, "-o", "yaml"])

    def fetch_version(self) -> bytes:
        return self.run(["version", "-o", "yaml"])
