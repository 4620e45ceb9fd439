"""Classify and unpack source archives

Three archive kinds are supported: zip, gzip compressed tar and bare tar.
Selection happens by sniffing the leading bytes of the blob, never by
trusting a file name, with a single exception: a blob that sniffs as opaque
binary data is accepted as tar when its name ends with ``.tar``.
"""

import logging
import os
import shutil
import stat
import tarfile
import zipfile
import zlib

from gzip import BadGzipFile
from pathlib import Path
from typing import BinaryIO, Final, Protocol

import filetype

logger = logging.getLogger("cnb-resolve.archive")

SNIFF_LEN: Final = 512

MIME_ZIP: Final = "application/zip"
MIME_GZIP: Final = "application/gzip"
MIME_TAR: Final = "application/x-tar"
MIME_OCTET_STREAM: Final = "application/octet-stream"
MIME_TEXT: Final = "text/plain"

# filetype names zip containers such as docx or epub by their own type
ZIP_MAGIC: Final = b"PK\x03\x04"

# Bytes that never appear in text. Same set as the WHATWG mime sniffing rules.
_BINARY_BYTES: Final = frozenset(
    [*range(0x00, 0x09), 0x0B, *range(0x0E, 0x1B), *range(0x1C, 0x20)]
)

StrPath = str | os.PathLike


class ArchiveError(ValueError):
    """An archive is malformed or contains an entry that cannot be extracted safely"""


def classify_file(reader: BinaryIO) -> str:
    """Sniff the media type of a seekable stream

    Up to ``SNIFF_LEN`` bytes are read and the stream is moved back to where
    it was, so the same handle can be passed on to an extractor.

    :param reader: a readable and seekable binary stream.
    :return: a MIME type string. Known archive formats are reported by their
        own type, unknown data is reported as either ``text/plain`` or
        ``application/octet-stream``.
    """
    position = reader.tell()
    head = reader.read(SNIFF_LEN)
    reader.seek(position)

    if head.startswith(ZIP_MAGIC):
        return MIME_ZIP
    mime = filetype.guess_mime(head)
    if mime:
        return mime
    if any(b in _BINARY_BYTES for b in head):
        return MIME_OCTET_STREAM
    return MIME_TEXT


def is_tar(filename: StrPath) -> bool:
    return os.fspath(filename).endswith(".tar")


def _is_within(path: StrPath, directory: StrPath) -> bool:
    directory = os.fspath(directory)
    path = os.fspath(path)
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)


def _entry_path(destination: Path, name: str) -> Path:
    """Map an archive entry name to a path under destination

    Raise ``ArchiveError`` if the name is absolute or escapes destination.
    """
    if os.path.isabs(name) or name.startswith(("/", "\\")):
        raise ArchiveError(f"archive entry {name!r} has an absolute path")
    target = os.path.normpath(os.path.join(destination, name))
    if not _is_within(target, destination):
        raise ArchiveError(f"archive entry {name!r} escapes the destination directory")
    return Path(target)


def _check_real_path(path: StrPath, destination: Path, name: str) -> str:
    """Resolve links extracted earlier and require the result to stay in destination"""
    real = os.path.realpath(path)
    if not _is_within(real, destination):
        raise ArchiveError(f"archive entry {name!r} escapes the destination directory")
    return real


def _make_dirs(directory: Path, destination: Path, name: str) -> None:
    _check_real_path(directory, destination, name)
    directory.mkdir(parents=True, exist_ok=True)


def _make_parents(target: Path, destination: Path, name: str) -> None:
    _make_dirs(target.parent, destination, name)
    if target.is_symlink():
        target.unlink()


def _check_link_target(destination: Path, target: Path, name: str, linkname: str) -> None:
    if os.path.isabs(linkname):
        raise ArchiveError(f"archive entry {name!r} links to absolute path {linkname!r}")
    resolved = os.path.realpath(os.path.join(os.path.realpath(target.parent), linkname))
    if not _is_within(resolved, destination):
        raise ArchiveError(f"archive entry {name!r} links outside the destination directory")


def _write_file(source: BinaryIO, target: Path, mode: int) -> None:
    with open(target, "wb") as f:
        shutil.copyfileobj(source, f)
    os.chmod(target, mode & 0o777)


class Extractor(Protocol):
    def extract(self, source: BinaryIO, destination: StrPath) -> None: ...


class ZipExtractor:
    """Extract zip archives, jar files included

    The central directory lives at the end of a zip archive, so the source
    must support random access.
    """

    def extract(self, source: BinaryIO, destination: StrPath) -> None:
        if not source.seekable():
            raise ArchiveError("zip extraction requires a seekable source")
        dest = Path(os.path.realpath(destination))
        try:
            with zipfile.ZipFile(source) as zf:
                for info in zf.infolist():
                    self._extract_entry(zf, info, dest)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise ArchiveError(f"invalid zip archive: {e}") from e

    @staticmethod
    def _extract_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, dest: Path) -> None:
        name = info.filename
        target = _entry_path(dest, name)
        if info.is_dir():
            _make_dirs(target, dest, name)
            return

        _make_parents(target, dest, name)
        unix_mode = info.external_attr >> 16
        if stat.S_ISLNK(unix_mode):
            linkname = zf.read(info).decode("utf-8")
            _check_link_target(dest, target, name, linkname)
            os.symlink(linkname, target)
            return

        with zf.open(info) as member:
            # archives created on other platforms carry no unix mode
            _write_file(member, target, unix_mode if unix_mode & 0o777 else 0o644)


class TarExtractor:
    """Extract tar archives sequentially, the source is never seeked"""

    stream_mode: str = "r|"

    def extract(self, source: BinaryIO, destination: StrPath) -> None:
        dest = Path(os.path.realpath(destination))
        try:
            with tarfile.open(fileobj=source, mode=self.stream_mode) as tar:
                for member in tar:
                    self._extract_member(tar, member, dest)
        except (tarfile.TarError, BadGzipFile, zlib.error, EOFError) as e:
            raise ArchiveError(f"invalid tar archive: {e}") from e

    @staticmethod
    def _extract_member(tar: tarfile.TarFile, member: tarfile.TarInfo, dest: Path) -> None:
        name = member.name
        target = _entry_path(dest, name)

        if member.isdir():
            _make_dirs(target, dest, name)
        elif member.isreg():
            _make_parents(target, dest, name)
            fo = tar.extractfile(member)
            try:
                _write_file(fo, target, member.mode)  # type: ignore
            finally:
                fo.close()  # type: ignore
        elif member.issym():
            _make_parents(target, dest, name)
            _check_link_target(dest, target, name, member.linkname)
            os.symlink(member.linkname, target)
        elif member.islnk():
            _make_parents(target, dest, name)
            # hard link names are relative to the archive root
            link_source = _entry_path(dest, member.linkname)
            real_source = _check_real_path(link_source, dest, name)
            if link_source.is_symlink() or not os.path.isfile(real_source):
                raise ArchiveError(
                    f"archive entry {name!r} links to missing file {member.linkname!r}"
                )
            os.link(real_source, target)
        else:
            raise ArchiveError(f"archive entry {name!r} is not a file, directory or link")


class TarGzExtractor(TarExtractor):
    """Decompress and extract gzip compressed tar archives as a stream"""

    stream_mode = "r|gz"


def extractor_for(media_type: str, filename: StrPath = "") -> Extractor | None:
    """Select the extractor for a sniffed media type

    :param media_type: str, the type returned by ``classify_file``.
    :param filename: the name of the blob. Only consulted for opaque binary
        data, which is accepted as tar if the name has the ``.tar`` suffix.
    :return: an extractor, or None if the media type is not supported.
    """
    if media_type == MIME_ZIP:
        return ZipExtractor()
    if media_type == MIME_GZIP:
        return TarGzExtractor()
    if media_type == MIME_TAR:
        return TarExtractor()
    if media_type == MIME_OCTET_STREAM and is_tar(filename):
        return TarExtractor()
    return None
