"""I/O related functions for downloading and locating ISIMIP files."""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Sequence
from urllib.parse import urlparse

import requests
from tqdm import tqdm

from isiclim.errors import (
    ExtractionError,
    FetchError,
    GridFormatError,
    IntegrityError,
    TransferError,
)

logger: logging.Logger = logging.getLogger("isiclim")


class WorkingDirectory:
    """A context manager for temporarily changing the current working directory.

    Usage:
        with WorkingDirectory('/path/to/new/directory'):
            # Code executed here will have the new directory as the CWD
    """

    def __init__(self, new_path: Path) -> None:
        self._new_path = new_path

    def __enter__(self) -> "WorkingDirectory":
        self._original_path = os.getcwd()
        os.chdir(self._new_path)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        os.chdir(self._original_path)


def filename_from_url(url: str) -> str:
    """Return the last component of the URL path.

    Raises:
        ValueError: If the URL has no file name.
    """
    name: str = Path(urlparse(url).path).name
    if not name:
        raise ValueError(f"Cannot determine a file name from URL '{url}'")
    return name


def _verify_checksum(
    file_path: Path, url: str, checksum: str, checksum_type: str
) -> None:
    try:
        digest = hashlib.new(checksum_type)
    except ValueError as e:
        raise IntegrityError(
            f"Unsupported checksum type '{checksum_type}'", url=url
        ) from e
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    if digest.hexdigest() != checksum.lower():
        raise IntegrityError(
            f"{checksum_type} checksum mismatch",
            url=url,
            parameters={"expected": checksum, "found": digest.hexdigest()},
        )


def extract_archive(archive: Path, destination: Path, url: str) -> list[Path]:
    """Extract all members of a zip archive into a folder.

    Args:
        archive: The zip file.
        destination: Folder to extract into.
        url: The URL the archive was downloaded from, used in error messages.

    Returns:
        Paths of the extracted files.

    Raises:
        ExtractionError: If the archive is corrupt.
    """
    try:
        with zipfile.ZipFile(archive, "r") as zip_ref:
            corrupt_member: str | None = zip_ref.testzip()
            if corrupt_member is not None:
                raise ExtractionError(
                    f"Corrupt member '{corrupt_member}' in archive {archive.name}",
                    url=url,
                )
            members = [m for m in zip_ref.infolist() if not m.is_dir()]
            extracted: list[Path] = [
                Path(zip_ref.extract(member, path=destination)) for member in members
            ]
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
        raise ExtractionError(
            f"Could not extract archive {archive.name}: {e}", url=url
        ) from e
    return extracted


def download_resource(
    url: str,
    destination: Path,
    validate: bool = True,
    extract: bool = True,
    checksum: str | None = None,
    checksum_type: str = "sha512",
    keep_archive: bool = False,
    overwrite: bool = False,
    session: requests.Session | None = None,
    chunk_size: int = 16384,
    timeout: float | int = 30,
    show_progress: bool = True,
) -> list[Path]:
    """Download a resource into a folder, and unpack it if it is a zip archive.

    The destination folder is created if it does not exist. The data is first written
    to a temporary file in the destination folder, which is moved to its final name
    only after the transfer (and validation) completed. An interrupted download thus
    never leaves a file under the final name.

    Args:
        url: The URL to download.
        destination: Folder to write the file (or the archive contents) to.
        validate: Whether to compare the number of bytes received with the
            Content-Length header and, if `checksum` is given, verify the checksum.
            Disabling validation is logged as a warning.
        extract: Whether to extract the resource if it is a zip archive.
        checksum: Expected hex digest of the file.
        checksum_type: Hash algorithm of `checksum`, e.g. "sha512".
        keep_archive: Whether to keep the zip file after extraction.
        overwrite: If False, a file that already exists under the final name is not downloaded again.
        session: An optional requests.Session object to use for the request.
        chunk_size: The chunk size for streaming downloads.
        timeout: The timeout in seconds for the request.
        show_progress: Whether to show a progress bar during download.

    Returns:
        Paths of the downloaded file, or of the extracted files for an archive.

    Raises:
        FetchError: If the resource cannot be fetched, the URL has no file name, or the
            file cannot be written to the destination.
        IntegrityError: If validation fails.
        ExtractionError: If the archive cannot be extracted.
    """
    destination = Path(destination)
    try:
        file_path: Path = destination / filename_from_url(url)
        destination.mkdir(parents=True, exist_ok=True)
    except (ValueError, OSError) as e:
        raise FetchError(f"Cannot prepare download: {e}", url=url) from e

    if file_path.exists() and not overwrite:
        logger.info(f"{file_path} already exists, skipping download")
    else:
        if not validate:
            logger.warning(f"Integrity validation disabled for {url}")

        if session is None:
            session = requests.Session()

        logger.info(f"Downloading {url} to {destination}")
        try:
            temp_file = tempfile.NamedTemporaryFile(
                dir=destination,
                prefix=f".{file_path.name}.",
                suffix=".part",
                delete=False,
            )
        except OSError as e:
            raise FetchError(f"Cannot create file in {destination}: {e}", url=url) from e
        temp_path = Path(temp_file.name)
        try:
            try:
                response = session.get(url, stream=True, timeout=timeout)
                try:
                    response.raise_for_status()
                    expected_size = response.headers.get("content-length")
                    encoded = response.headers.get("content-encoding") is not None
                    written: int = 0
                    progress_bar = tqdm(
                        total=int(expected_size or 0),
                        unit="B",
                        unit_scale=True,
                        disable=not show_progress,
                    )
                    for data in response.iter_content(chunk_size=chunk_size):
                        temp_file.write(data)
                        written += len(data)
                        progress_bar.update(len(data))
                    progress_bar.close()
                finally:
                    response.close()
            except requests.RequestException as e:
                raise FetchError(f"Request failed: {e}", url=url) from e
            # requests exceptions are OSErrors as well, so local failures come second
            except OSError as e:
                raise FetchError(f"Cannot write {temp_path}: {e}", url=url) from e
            finally:
                temp_file.close()

            if validate:
                if expected_size is not None and not encoded:
                    if written != int(expected_size):
                        raise IntegrityError(
                            "Incomplete download",
                            url=url,
                            parameters={
                                "expected_bytes": int(expected_size),
                                "received_bytes": written,
                            },
                        )
                if checksum is not None:
                    _verify_checksum(temp_path, url, checksum, checksum_type)

            try:
                os.replace(temp_path, file_path)
            except OSError as e:
                raise FetchError(f"Cannot move download to {file_path}: {e}", url=url) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()

    if extract and zipfile.is_zipfile(file_path):
        logger.info(f"Extracting {file_path.name}")
        extracted = extract_archive(file_path, destination, url=url)
        if not keep_archive:
            file_path.unlink()
        return extracted
    return [file_path]


@dataclass
class DownloadReport:
    """Outcome of a batch of downloads."""

    files: list[Path] = field(default_factory=list)
    errors: list[TransferError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


def download_resources(
    urls: Sequence[str],
    destination: Path,
    checksums: Sequence[str | None] | None = None,
    **kwargs,
) -> DownloadReport:
    """Download several resources independently of each other.

    A failing download is recorded in the report and does not stop the remaining downloads.

    Args:
        urls: The URLs to download.
        destination: Folder to download into.
        checksums: Expected checksums, parallel to `urls`.
        **kwargs: Passed to `download_resource`.

    Returns:
        The files produced and the errors encountered.

    Raises:
        ValueError: If `checksums` is not as long as `urls`.
    """
    if checksums is None:
        checksums = [None] * len(urls)
    if len(checksums) != len(urls):
        raise ValueError("checksums must have the same length as urls")

    report = DownloadReport()
    for url, checksum in zip(urls, checksums):
        try:
            report.files.extend(
                download_resource(url, destination, checksum=checksum, **kwargs)
            )
        except TransferError as e:
            logger.error(str(e))
            report.errors.append(e)
    logger.info(
        f"Downloaded {len(urls) - len(report.errors)}/{len(urls)} resource(s) to {destination}"
    )
    return report


def find_grid_file(directory: Path, pattern: str = "*.nc") -> Path:
    """Find the single grid file in a folder.

    Args:
        directory: The folder to search.
        pattern: Glob pattern the file name must match.

    Returns:
        Path of the matching file.

    Raises:
        GridFormatError: If no file or more than one file matches.
    """
    matches: list[Path] = sorted(Path(directory).glob(pattern))
    if not matches:
        raise GridFormatError(
            "No grid file found",
            parameters={"directory": str(directory), "pattern": pattern},
        )
    if len(matches) > 1:
        raise GridFormatError(
            f"Found {len(matches)} grid files, expected exactly one",
            parameters={
                "directory": str(directory),
                "pattern": pattern,
                "matches": [m.name for m in matches],
            },
        )
    return matches[0]
