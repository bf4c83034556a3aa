import io
import logging
import os
import tarfile
import time
import zipfile
from dataclasses import dataclass
from typing import IO

import lz4.frame
import snappy

from mesh_bugreport.errors import (
    ArchiveClosed,
    ArchiveIOFailure,
    DuplicateEntry,
    UnsupportedFormat,
)
from mesh_bugreport.model import ArtifactBlob

logger = logging.getLogger(__name__)

# ----------------------------
# Format table
# ----------------------------


@dataclass(frozen=True)
class ArchiveFormat:
    tag: str
    container: str  # "tar" | "zip" | "rar"
    compression: str | None = None  # "gz" | "bz2" | "xz" | "lz4" | "sz"
    writable: bool = True


TAR_GZ = ArchiveFormat("tar.gz", "tar", "gz")
TAR_BZ2 = ArchiveFormat("tar.bz2", "tar", "bz2")
TAR_XZ = ArchiveFormat("tar.xz", "tar", "xz")
TAR_LZ4 = ArchiveFormat("tar.lz4", "tar", "lz4")
TAR_SZ = ArchiveFormat("tar.sz", "tar", "sz")
TAR = ArchiveFormat("tar", "tar")
ZIP = ArchiveFormat("zip", "zip")
RAR = ArchiveFormat("rar", "rar", writable=False)
# Single-stream compressors hold a tar stream so every entry survives
GZ = ArchiveFormat("gz", "tar", "gz")
BZ2 = ArchiveFormat("bz2", "tar", "bz2")
XZ = ArchiveFormat("xz", "tar", "xz")
LZ4 = ArchiveFormat("lz4", "tar", "lz4")
SZ = ArchiveFormat("sz", "tar", "sz")

# Ordered: multi-part extensions before the single-part ones they end with
EXTENSIONS: tuple[tuple[str, ArchiveFormat], ...] = (
    (".tar.gz", TAR_GZ),
    (".tar.bz2", TAR_BZ2),
    (".tar.xz", TAR_XZ),
    (".tar.lz4", TAR_LZ4),
    (".tar.sz", TAR_SZ),
    (".tgz", TAR_GZ),
    (".tbz2", TAR_BZ2),
    (".txz", TAR_XZ),
    (".tlz4", TAR_LZ4),
    (".tsz", TAR_SZ),
    (".tar", TAR),
    (".zip", ZIP),
    (".rar", RAR),
    (".gz", GZ),
    (".bz2", BZ2),
    (".xz", XZ),
    (".lz4", LZ4),
    (".sz", SZ),
)

DEFAULT_FORMAT = TAR_GZ
DEFAULT_EXTENSION = ".tar.gz"


@dataclass(frozen=True)
class ArchiveDescriptor:
    path: str
    format: ArchiveFormat


def infer_format(path: str) -> ArchiveDescriptor:
    """
    Map an output path to its container format.

    The longest matching extension wins. A path without any extension gets
    the default extension appended; an unknown extension keeps the path as
    given and falls back to the default format.
    """
    basename = os.path.basename(path)
    lowered = basename.lower()
    for ext, fmt in EXTENSIONS:
        if lowered.endswith(ext) and len(lowered) > len(ext):
            return ArchiveDescriptor(path=path, format=fmt)

    _, ext = os.path.splitext(basename)
    if not ext:
        return ArchiveDescriptor(path=path + DEFAULT_EXTENSION, format=DEFAULT_FORMAT)
    return ArchiveDescriptor(path=path, format=DEFAULT_FORMAT)


# ----------------------------
# Archive handles
# ----------------------------


class ArchiveHandle:
    """
    Append-only, single-writer sink for artifacts.

    Entry names must be unique; write() after close() fails; close() may be
    called again without effect. Every I/O error surfaces as
    ArchiveIOFailure.
    """

    def __init__(self, descriptor: ArchiveDescriptor):
        self.descriptor = descriptor
        self.closed = False
        self.entries: list[str] = []
        self._names: set[str] = set()
        # One timestamp for every entry keeps identical runs comparable
        self.mtime = int(time.time())

    @property
    def path(self) -> str:
        return self.descriptor.path

    def write(self, blob: ArtifactBlob) -> None:
        if self.closed:
            raise ArchiveClosed(self.path)
        if blob.path in self._names:
            raise DuplicateEntry(blob.path)
        self._names.add(blob.path)

        try:
            self._add(blob.path, blob.content)
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise ArchiveIOFailure(self.path, str(e)) from e
        self.entries.append(blob.path)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._finalize()
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise ArchiveIOFailure(self.path, str(e)) from e
        logger.debug("Closed %s with %d entries", self.path, len(self.entries))

    def _add(self, name: str, content: bytes) -> None:
        raise NotImplementedError

    def _finalize(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class _SnappyWriter(io.RawIOBase):
    """
    Write-only file object producing the snappy framing format.
    """

    def __init__(self, raw: IO[bytes]):
        self._raw = raw
        self._compressor = snappy.StreamCompressor()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        chunk = bytes(data)
        if chunk:
            self._raw.write(self._compressor.add_chunk(chunk))
        return len(chunk)

    def close(self) -> None:
        if not self.closed:
            self._raw.close()
        super().close()


class TarArchive(ArchiveHandle):
    def __init__(self, descriptor: ArchiveDescriptor):
        super().__init__(descriptor)
        compression = descriptor.format.compression
        self._stream: IO[bytes] | None = None

        if compression in (None, "gz", "bz2", "xz"):
            mode = "w" if compression is None else f"w:{compression}"
            self._tar = tarfile.open(descriptor.path, mode=mode)
            return

        if compression == "lz4":
            self._stream = lz4.frame.open(descriptor.path, mode="wb")
        elif compression == "sz":
            self._stream = _SnappyWriter(open(descriptor.path, "wb"))
        else:
            raise ValueError(f"Unknown compression '{compression}'")
        self._tar = tarfile.open(fileobj=self._stream, mode="w|")

    def _add(self, name: str, content: bytes) -> None:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        info.mtime = self.mtime
        info.mode = 0o644
        self._tar.addfile(info, io.BytesIO(content))

    def _finalize(self) -> None:
        try:
            self._tar.close()
        finally:
            if self._stream is not None:
                self._stream.close()


class ZipArchive(ArchiveHandle):
    def __init__(self, descriptor: ArchiveDescriptor):
        super().__init__(descriptor)
        self._zip = zipfile.ZipFile(
            descriptor.path, mode="w", compression=zipfile.ZIP_DEFLATED
        )
        self._date_time = time.localtime(self.mtime)[:6]

    def _add(self, name: str, content: bytes) -> None:
        info = zipfile.ZipInfo(filename=name, date_time=self._date_time)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        self._zip.writestr(info, content)

    def _finalize(self) -> None:
        self._zip.close()


HANDLERS: dict[str, type[ArchiveHandle]] = {
    "tar": TarArchive,
    "zip": ZipArchive,
}


def open_archive(path: str) -> ArchiveHandle:
    descriptor = infer_format(path)
    fmt = descriptor.format
    if not fmt.writable:
        raise UnsupportedFormat(descriptor.path, fmt.tag)

    parent = os.path.dirname(descriptor.path)
    try:
        if parent:
            os.makedirs(parent, exist_ok=True)
        handle = HANDLERS[fmt.container](descriptor)
    except (OSError, tarfile.TarError) as e:
        raise ArchiveIOFailure(descriptor.path, str(e)) from e

    logger.debug("Writing %s archive to %s", fmt.tag, descriptor.path)
    return handle
