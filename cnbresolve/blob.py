"""Download a source blob over HTTP(S) and unpack it into a directory"""

import contextlib
import logging
import os
import tempfile
import threading

from typing import BinaryIO, Final, Iterator
from urllib.parse import urlparse

import requests

from cnbresolve.archive import StrPath, classify_file, extractor_for, is_tar

DEFAULT_TIMEOUT: Final = 60.0
CHUNK_SIZE: Final = 1024 * 1024


class UnexpectedBlobTypeError(ValueError):
    def __init__(self) -> None:
        super().__init__("unexpected blob file type, must be one of .zip, .tar.gz, .tar, .jar")


class BlobFetchError(RuntimeError):
    def __init__(self, blob_url: str, status_code: int) -> None:
        super().__init__(f"failed to get blob {blob_url}")
        self.blob_url = blob_url
        self.status_code = status_code


class FetchCancelled(RuntimeError):
    """The download was aborted because the caller cancelled it"""


class Fetcher:
    """Fetch source blobs

    Every call downloads into its own transient file, which is removed before
    ``fetch`` returns or raises. A fetcher holds no state between calls and can
    be shared by concurrent callers.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.logger = logger or logging.getLogger("cnb-resolve.blob")
        self.timeout = timeout
        self.chunk_size = chunk_size

    def fetch(self, dir: StrPath, blob_url: str, cancel: threading.Event | None = None) -> None:
        """Download the blob at blob_url and extract it into dir

        :param dir: the destination directory. It is expected to exist.
        :param blob_url: str, the HTTP(S) URL of a zip, jar, tar.gz or tar blob.
        :param cancel: optional event. When it is set during the download, the
            download is aborted with ``FetchCancelled``.
        :raises BlobFetchError: if the server does not respond with 200.
        :raises UnexpectedBlobTypeError: if the blob is not a supported archive.
        """
        with self._download(blob_url, cancel) as file:
            media_type = classify_file(file)
            extractor = extractor_for(media_type, file.name)
            if extractor is None:
                self.logger.debug("blob %s is detected as %s", blob_url, media_type)
                raise UnexpectedBlobTypeError()
            extractor.extract(file, dir)

        u = urlparse(blob_url)
        self.logger.info("Successfully downloaded %s%s in path %r", u.netloc, u.path, os.fspath(dir))

    @contextlib.contextmanager
    def _download(self, blob_url: str, cancel: threading.Event | None) -> Iterator[BinaryIO]:
        # keep the .tar suffix, which is the only hint for tar without ustar magic
        suffix = ".tar" if is_tar(urlparse(blob_url).path) else ""
        fd, path = tempfile.mkstemp(prefix="blob-", suffix=suffix)
        try:
            with os.fdopen(fd, "w+b") as file:
                self._write_body(blob_url, file, cancel)
                file.seek(0)
                yield file
        finally:
            os.unlink(path)

    def _write_body(self, blob_url: str, file: BinaryIO, cancel: threading.Event | None) -> None:
        with requests.get(blob_url, stream=True, timeout=self.timeout) as resp:
            if resp.status_code != requests.codes.ok:
                raise BlobFetchError(blob_url, resp.status_code)
            for chunk in resp.iter_content(chunk_size=self.chunk_size):
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(f"download of {blob_url} is cancelled")
                file.write(chunk)
