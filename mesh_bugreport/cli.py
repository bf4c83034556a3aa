import argparse
import logging
import signal
import sys
import threading
import time

from mesh_bugreport.archive import EXTENSIONS
from mesh_bugreport.bugreport import BugReport
from mesh_bugreport.cluster import KubectlCluster
from mesh_bugreport.config import BugReportConfig
from mesh_bugreport.output import error
from mesh_bugreport.resolver import DEFAULT_WORKERS

DESCRIPTION = """
Generate a bug report for the service mesh control plane and its applications.

If --out-file is not given, the report is written as a tar.gz archive. The
archive format is chosen by the output file extension; supported extensions:
{extensions}

Sensitive data is not redacted. Audit the archive before sharing it.
"""

EXAMPLE = """
example:
  mesh-bugreport --app-namespaces bookbuyer,bookstore \\
      --app-deployments bookbuyer/bookbuyer,bookstore/bookstore-v1 \\
      --app-pods bookthief/bookthief-7bb7f9b98c-qplq4 -o report.zip
"""


def build_parser() -> argparse.ArgumentParser:
    extensions = "  " + " ".join(ext for ext, _ in EXTENSIONS)
    parser = argparse.ArgumentParser(
        prog="mesh-bugreport",
        description=DESCRIPTION.format(extensions=extensions),
        epilog=EXAMPLE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("--all", action="store_true", help="All pods in the mesh")
    parser.add_argument(
        "--app-namespaces", action="append", help="Application namespaces"
    )
    parser.add_argument(
        "--app-deployments",
        action="append",
        help="Application deployments: <namespace>/<deployment>",
    )
    parser.add_argument(
        "--app-pods", action="append", help="Application pods: <namespace>/<pod>"
    )
    parser.add_argument(
        "-o", "--out-file", help="Output file with archive format extension"
    )

    parser.add_argument(
        "--mesh-namespace", help="Mesh control-plane namespace (env MESH_NAMESPACE)"
    )
    parser.add_argument("--kubeconfig", help="Path to kubeconfig (env KUBECONFIG)")
    parser.add_argument("--context", help="Kubeconfig context to use")
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help="Parallel cluster requests",
    )
    parser.add_argument(
        "--timeout", type=float, default=None, help="Overall deadline in seconds"
    )
    parser.add_argument("--verbose", action="store_true")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def install_interrupt_handler(cancel_event: threading.Event) -> None:
    """
    First Ctrl-C cancels collection and keeps what was gathered, a second
    one interrupts immediately.
    """

    def handler(signum, frame):
        if cancel_event.is_set():
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        print(
            "\nCancelling, finishing the archive with what was collected...",
            file=sys.stderr,
        )
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = BugReportConfig.from_args(args)
    except ValueError as e:
        parser.error(str(e))

    configure_logging(config.verbose)

    cancel_event = threading.Event()
    install_interrupt_handler(cancel_event)

    start = time.monotonic()
    cluster = KubectlCluster(
        kubeconfig=config.kubeconfig,
        context=config.context,
        deadline=config.deadline(start),
        cancel_event=cancel_event,
    )

    try:
        return BugReport(config, cluster, cancel_event=cancel_event).run()
    except KeyboardInterrupt:
        error(sys.stderr, "Interrupted")
        return 130
