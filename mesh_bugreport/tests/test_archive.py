import io
import os
import tarfile
import zipfile

import lz4.frame
import pytest
import snappy

from mesh_bugreport.archive import (
    DEFAULT_FORMAT,
    EXTENSIONS,
    infer_format,
    open_archive,
)
from mesh_bugreport.errors import (
    ArchiveClosed,
    ArchiveIOFailure,
    DuplicateEntry,
    UnsupportedFormat,
)
from mesh_bugreport.model import ArtifactBlob

BLOBS = [
    ArtifactBlob(path="cluster/version.yaml", content=b"gitVersion: v1.29.2\n"),
    ArtifactBlob(
        path="targets/bookbuyer/pods/bookbuyer-abc/logs.log",
        content=b"line 1\nline 2\n",
    ),
    ArtifactBlob(
        path="targets/bookbuyer/pods/bookbuyer-abc/events.yaml",
        content=b"",
        partial=True,
    ),
]

# ----------------------------
# Format inference
# ----------------------------


@pytest.mark.parametrize(
    "path,tag,container,compression",
    [
        ("report.tar.gz", "tar.gz", "tar", "gz"),
        ("report.tgz", "tar.gz", "tar", "gz"),
        ("report.zip", "zip", "zip", None),
        ("report.tar", "tar", "tar", None),
        ("report.tar.bz2", "tar.bz2", "tar", "bz2"),
        ("report.tbz2", "tar.bz2", "tar", "bz2"),
        ("report.tar.xz", "tar.xz", "tar", "xz"),
        ("report.txz", "tar.xz", "tar", "xz"),
        ("report.tar.lz4", "tar.lz4", "tar", "lz4"),
        ("report.tlz4", "tar.lz4", "tar", "lz4"),
        ("report.tar.sz", "tar.sz", "tar", "sz"),
        ("report.tsz", "tar.sz", "tar", "sz"),
        ("report.gz", "gz", "tar", "gz"),
        ("report.bz2", "bz2", "tar", "bz2"),
        ("report.xz", "xz", "tar", "xz"),
        ("report.lz4", "lz4", "tar", "lz4"),
        ("report.sz", "sz", "tar", "sz"),
        ("report.rar", "rar", "rar", None),
        ("out/REPORT.TAR.GZ", "tar.gz", "tar", "gz"),
    ],
)
def test_infer_format(path, tag, container, compression):
    descriptor = infer_format(path)

    assert descriptor.path == path
    assert descriptor.format.tag == tag
    assert descriptor.format.container == container
    assert descriptor.format.compression == compression


def test_no_extension_appends_default():
    descriptor = infer_format("report")

    assert descriptor.path == "report.tar.gz"
    assert descriptor.format == DEFAULT_FORMAT


def test_unknown_extension_falls_back_without_renaming():
    descriptor = infer_format("report.xyz")

    assert descriptor.path == "report.xyz"
    assert descriptor.format == DEFAULT_FORMAT


def test_dotted_directory_is_not_an_extension():
    descriptor = infer_format(os.path.join("bug.reports", "today"))

    assert descriptor.path == os.path.join("bug.reports", "today") + ".tar.gz"


def test_multi_part_extensions_come_first():
    exts = [ext for ext, _ in EXTENSIONS]
    for i, ext in enumerate(exts):
        for later in exts[i + 1 :]:
            assert not later.endswith(ext), f"{later} is shadowed by {ext}"


# ----------------------------
# Write contract
# ----------------------------


def test_duplicate_entry_is_fatal(tmp_path):
    handle = open_archive(str(tmp_path / "out.tar.gz"))
    handle.write(ArtifactBlob(path="a/logs.log", content=b"one"))

    with pytest.raises(DuplicateEntry) as exc:
        handle.write(ArtifactBlob(path="a/logs.log", content=b"two"))
    assert exc.value.path == "a/logs.log"
    handle.close()


def test_write_after_close(tmp_path):
    handle = open_archive(str(tmp_path / "out.zip"))
    handle.close()

    with pytest.raises(ArchiveClosed):
        handle.write(BLOBS[0])
    handle.close()


def test_rar_is_open_only(tmp_path):
    with pytest.raises(UnsupportedFormat):
        open_archive(str(tmp_path / "out.rar"))
    assert not (tmp_path / "out.rar").exists()


def test_creates_parent_directories(tmp_path):
    path = tmp_path / "a" / "b" / "out.tar"
    with open_archive(str(path)) as handle:
        handle.write(BLOBS[0])

    assert path.exists()


def test_unwritable_destination(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(ArchiveIOFailure):
        open_archive(str(blocker / "out.tar.gz"))


def test_no_extension_writes_to_fixed_up_path(tmp_path):
    with open_archive(str(tmp_path / "report")) as handle:
        handle.write(BLOBS[0])

    assert handle.path == str(tmp_path / "report.tar.gz")
    with tarfile.open(handle.path, "r:gz") as tar:
        assert tar.getnames() == ["cluster/version.yaml"]


# ----------------------------
# Containers read back
# ----------------------------


def write_all(path):
    with open_archive(str(path)) as handle:
        for blob in BLOBS:
            handle.write(blob)
    return handle


def tar_contents(tar):
    return [(m.name, tar.extractfile(m).read()) for m in tar.getmembers()]


EXPECTED = [(b.path, b.content) for b in BLOBS]


@pytest.mark.parametrize(
    "name,mode",
    [
        ("out.tar.gz", "r:gz"),
        ("out.tar", "r:"),
        ("out.tar.bz2", "r:bz2"),
        ("out.txz", "r:xz"),
        ("out.gz", "r:gz"),
        ("out.xyz", "r:gz"),
    ],
)
def test_tar_variants(tmp_path, name, mode):
    handle = write_all(tmp_path / name)

    with tarfile.open(handle.path, mode) as tar:
        assert tar_contents(tar) == EXPECTED


def test_zip(tmp_path):
    handle = write_all(tmp_path / "out.zip")

    with zipfile.ZipFile(handle.path) as zf:
        assert [(n, zf.read(n)) for n in zf.namelist()] == EXPECTED


def test_lz4(tmp_path):
    handle = write_all(tmp_path / "out.tar.lz4")

    with lz4.frame.open(handle.path, mode="rb") as f:
        with tarfile.open(fileobj=io.BytesIO(f.read()), mode="r:") as tar:
            assert tar_contents(tar) == EXPECTED


def test_snappy(tmp_path):
    handle = write_all(tmp_path / "out.tsz")

    decompressed = io.BytesIO()
    with open(handle.path, "rb") as src:
        snappy.stream_decompress(src, decompressed)
    decompressed.seek(0)
    with tarfile.open(fileobj=decompressed, mode="r:") as tar:
        assert tar_contents(tar) == EXPECTED


def test_entries_keep_write_order(tmp_path):
    handle = write_all(tmp_path / "out.tar.gz")

    assert handle.entries == [b.path for b in BLOBS]


def test_failed_tar_close_still_closes_codec_stream(tmp_path, monkeypatch):
    handle = open_archive(str(tmp_path / "out.tar.lz4"))
    handle.write(BLOBS[0])

    def broken_close():
        raise OSError("disk full")

    monkeypatch.setattr(handle._tar, "close", broken_close)

    with pytest.raises(ArchiveIOFailure):
        handle.close()
    assert handle._stream.closed
