from typing import TextIO

from mesh_bugreport.model import (
    ROLE_CONTROL_PLANE,
    ROLE_NAMESPACE,
    ROLE_TARGET,
    CollectionReport,
    TargetStatus,
)

# ----------------------------
# Diagnostic stream
# ----------------------------


def warn(stream: TextIO, message: str) -> None:
    print(f"[WARNING] {message}", file=stream)


def error(stream: TextIO, message: str) -> None:
    print(f"[ERROR] {message}", file=stream)


# ----------------------------
# Summary
# ----------------------------


def summary_line(label: str, report: CollectionReport, role: str) -> str | None:
    counts = report.counts(role)
    total = sum(counts.values())
    if not total:
        return None

    line = (
        f"{label}: {counts[TargetStatus.SUCCEEDED]}/{total} succeeded, "
        f"{counts[TargetStatus.PARTIAL]} partial, {counts[TargetStatus.FAILED]} failed"
    )
    if counts[TargetStatus.CANCELLED]:
        line += f", {counts[TargetStatus.CANCELLED]} cancelled"
    return line


def print_summary(
    report: CollectionReport,
    archive_path: str,
    elapsed: float,
    stream: TextIO,
    control_plane_namespace: str = "",
) -> None:
    """
    Print the end-of-run summary.

    Targets, namespaces and control plane are counted separately; every
    failed artifact is listed as '<resource>: <artifact>: <reason>'.
    """
    cp_label = "Control plane"
    if control_plane_namespace:
        cp_label = f"Control plane ({control_plane_namespace})"
    sections = (
        ("Targets", ROLE_TARGET),
        ("Namespaces", ROLE_NAMESPACE),
        (cp_label, ROLE_CONTROL_PLANE),
    )
    for label, role in sections:
        line = summary_line(label, report, role)
        if line:
            print(line, file=stream)

    failures = report.failures()
    if failures:
        print("\nFailures:", file=stream)
        for ref, kind, reason in failures:
            print(f"  - {ref.label}: {kind}: {reason}", file=stream)

    if report.cancelled:
        print("\nCollection was cancelled, the bug report is incomplete", file=stream)

    print(f"\nBug report successfully written to {archive_path}", file=stream)
    print(f"Completed in {elapsed:.1f}s", file=stream)
