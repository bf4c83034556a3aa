import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from mesh_bugreport.model import Mode, TargetSpec
from mesh_bugreport.resolver import DEFAULT_WORKERS

DEFAULT_MESH_NAMESPACE = "osm-system"
MESH_NAMESPACE_ENV = "MESH_NAMESPACE"
KUBECONFIG_ENV = "KUBECONFIG"


def split_list(values: list[str] | str | None) -> list[str]:
    """
    Flatten repeated and comma-separated flag values, dropping blanks.
    """
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    items = []
    for value in values:
        items.extend(v.strip() for v in value.split(",") if v.strip())
    return items


def default_out_file(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"mesh-bugreport-{now.strftime('%Y%m%d-%H%M%S')}.tar.gz"


@dataclass
class BugReportConfig:
    all: bool = False
    app_namespaces: list[str] = field(default_factory=list)
    app_deployments: list[str] = field(default_factory=list)
    app_pods: list[str] = field(default_factory=list)
    out_file: str | None = None
    mesh_namespace: str = DEFAULT_MESH_NAMESPACE
    kubeconfig: str | None = None
    context: str | None = None
    workers: int = DEFAULT_WORKERS
    timeout: float | None = None
    verbose: bool = False

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")

    @classmethod
    def from_args(
        cls, args, environ: Mapping[str, str] | None = None
    ) -> "BugReportConfig":
        environ = os.environ if environ is None else environ
        mesh_namespace = (
            args.mesh_namespace
            or environ.get(MESH_NAMESPACE_ENV)
            or DEFAULT_MESH_NAMESPACE
        )
        return cls(
            all=bool(args.all),
            app_namespaces=split_list(args.app_namespaces),
            app_deployments=split_list(args.app_deployments),
            app_pods=split_list(args.app_pods),
            out_file=args.out_file or None,
            mesh_namespace=mesh_namespace,
            kubeconfig=args.kubeconfig or environ.get(KUBECONFIG_ENV) or None,
            context=args.context or None,
            workers=args.workers,
            timeout=args.timeout,
            verbose=bool(args.verbose),
        )

    def target_spec(self) -> TargetSpec:
        if self.all:
            return TargetSpec.all()
        return TargetSpec(
            mode=Mode.EXPLICIT,
            namespaces=list(self.app_namespaces),
            deployments=list(self.app_deployments),
            pods=list(self.app_pods),
        )

    def output_path(self) -> str:
        return self.out_file or default_out_file()

    def deadline(self, start: float) -> float | None:
        if self.timeout is None:
            return None
        return start + self.timeout
