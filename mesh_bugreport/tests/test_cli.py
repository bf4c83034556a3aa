import pytest

from mesh_bugreport import cli
from mesh_bugreport.config import (
    DEFAULT_MESH_NAMESPACE,
    BugReportConfig,
    default_out_file,
    split_list,
)
from mesh_bugreport.model import Mode


def parse(argv, environ=None):
    args = cli.build_parser().parse_args(argv)
    return BugReportConfig.from_args(args, environ=environ or {})


def test_comma_separated_and_repeated_flags():
    config = parse(
        [
            "--app-namespaces",
            "bookbuyer,bookstore",
            "--app-namespaces",
            "bookthief",
            "--app-deployments",
            "bookbuyer/bookbuyer, bookstore/bookstore-v1",
            "--app-pods",
            "bookthief/bookthief-7bb7f9b98c-qplq4",
            "-o",
            "report.zip",
        ]
    )

    assert config.app_namespaces == ["bookbuyer", "bookstore", "bookthief"]
    assert config.app_deployments == ["bookbuyer/bookbuyer", "bookstore/bookstore-v1"]
    assert config.app_pods == ["bookthief/bookthief-7bb7f9b98c-qplq4"]
    assert config.out_file == "report.zip"
    assert config.target_spec().mode is Mode.EXPLICIT


def test_all_flag_builds_wildcard_spec():
    spec = parse(["--all", "--app-pods", "a/b"]).target_spec()

    assert spec.mode is Mode.ALL
    assert spec.pods == []


def test_environment_fallbacks():
    config = parse([], environ={"MESH_NAMESPACE": "mesh", "KUBECONFIG": "/tmp/kc"})

    assert config.mesh_namespace == "mesh"
    assert config.kubeconfig == "/tmp/kc"
    assert parse([]).mesh_namespace == DEFAULT_MESH_NAMESPACE
    flagged = parse(["--mesh-namespace", "flag"], environ={"MESH_NAMESPACE": "env"})
    assert flagged.mesh_namespace == "flag"


def test_split_list():
    assert split_list(None) == []
    assert split_list("a, b,,c") == ["a", "b", "c"]


def test_default_out_file_is_tar_gz():
    assert default_out_file().startswith("mesh-bugreport-")
    assert default_out_file().endswith(".tar.gz")


def test_invalid_workers_exit_with_usage_error(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--workers", "0"])

    assert exc.value.code == 2
    assert "workers must be at least 1" in capsys.readouterr().err


def test_main_runs_bug_report(monkeypatch):
    seen = {}

    class FakeBugReport:
        def __init__(self, config, cluster, cancel_event=None):
            seen["config"] = config
            seen["cluster"] = cluster
            seen["cancel_event"] = cancel_event

        def run(self):
            return 0

    monkeypatch.setattr(cli, "BugReport", FakeBugReport)
    monkeypatch.setattr(cli, "install_interrupt_handler", lambda event: None)

    status = cli.main(
        [
            "--app-pods",
            "bookbuyer/bookbuyer-abc",
            "--context",
            "kind-osm",
            "--timeout",
            "60",
        ]
    )

    assert status == 0
    assert seen["config"].app_pods == ["bookbuyer/bookbuyer-abc"]
    assert seen["cluster"].context == "kind-osm"
    assert seen["cluster"].deadline is not None
    assert seen["cancel_event"] is not None
    assert seen["cluster"].cancel_event is seen["cancel_event"]
