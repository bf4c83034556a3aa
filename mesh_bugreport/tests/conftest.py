import json
import os
import threading
import time

import pytest

from mesh_bugreport.cluster import ClusterQuery
from mesh_bugreport.errors import ClusterQueryFailure
from mesh_bugreport.model import ResourceRef

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")


def load_fixture(filename):
    with open(os.path.join(FIXTURES_DIR, filename), encoding="utf-8") as f:
        return json.load(f)


class FakeCluster(ClusterQuery):
    """
    In-memory cluster.

    failures holds (call, key) pairs that raise ClusterQueryFailure, where key
    is a namespace for namespace-level calls, 'ns/name' for resource calls,
    or '*' for every key.
    """

    def __init__(self, namespaces=None, pods=None, failures=None, delays=None):
        self.namespaces = list(namespaces or [])
        self.pods = {ns: list(names) for ns, names in (pods or {}).items()}
        self.failures = set(failures or ())
        self.delays = dict(delays or {})
        self.calls = []
        self._lock = threading.Lock()

    def _call(self, call, key):
        with self._lock:
            self.calls.append((call, key))
        if key in self.delays:
            time.sleep(self.delays[key])
        if (call, key) in self.failures or (call, "*") in self.failures:
            raise ClusterQueryFailure(
                f"kubectl {call} {key}", f"{call} unavailable for {key}"
            )

    def _resource(self, call, ref: ResourceRef) -> bytes:
        self._call(call, str(ref))
        return f"{call} of {ref.kind} {ref}\n".encode()

    def list_namespaces(self, label_selector):
        self._call("list_namespaces", label_selector)
        return list(self.namespaces)

    def list_pods(self, namespace):
        self._call("list_pods", namespace)
        return list(self.pods.get(namespace, []))

    def fetch_manifest(self, ref):
        return self._resource("manifest", ref)

    def fetch_describe(self, ref):
        return self._resource("describe", ref)

    def fetch_logs(self, ref, previous=False):
        return self._resource("previous-logs" if previous else "logs", ref)

    def fetch_events(self, ref):
        return self._resource("events", ref)

    def fetch_namespace_resources(self, namespace):
        self._call("resources", namespace)
        return f"resources of {namespace}\n".encode()

    def fetch_configmaps(self, namespace):
        self._call("configmaps", namespace)
        return f"configmaps of {namespace}\n".encode()

    def fetch_mesh_config(self, namespace):
        self._call("mesh-config", namespace)
        return f"meshconfig of {namespace}\n".encode()

    def fetch_version(self):
        self._call("version", "cluster")
        return b"serverVersion:\n  gitVersion: v1.29.2\n"


@pytest.fixture
def cluster():
    return FakeCluster(
        namespaces=["bookstore", "bookbuyer"],
        pods={
            "osm-system": ["osm-controller-7d9c", "osm-injector-5b8f"],
            "bookstore": ["bookstore-v1-abc", "bookstore-v2-def"],
            "bookbuyer": ["bookbuyer-abc"],
        },
    )
