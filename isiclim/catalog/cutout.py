"""Server-side spatial cutouts of ISIMIP files.

The ISIMIP files API crops files on request. A `cutout_bbox` job is submitted for a list
of file paths and a bounding box, and the job is then polled through its URL until the
server has prepared a zip file with the cropped files.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import requests
from isimip_client.client import ISIMIPClient

from isiclim.errors import CatalogLookupError

logger: logging.Logger = logging.getLogger("isiclim")


@dataclass(frozen=True)
class BoundingBox:
    """A rectangular extent in geographic coordinates.

    West and east are kept as given. A box with west > east crosses the antimeridian
    and is passed to the server unchanged.
    """

    south: float
    north: float
    west: float
    east: float

    def __post_init__(self) -> None:
        if not -90 <= self.south <= 90 or not -90 <= self.north <= 90:
            raise ValueError(
                f"Latitudes must be between -90 and 90, got south={self.south} and north={self.north}"
            )
        if self.south > self.north:
            raise ValueError(
                f"South ({self.south}) must not be larger than north ({self.north})"
            )

    @classmethod
    def from_list(cls, bounds: Sequence[float]) -> BoundingBox:
        """Create a bounding box from [south, north, west, east].

        Raises:
            ValueError: If the sequence does not have four numeric elements.
        """
        if len(bounds) != 4:
            raise ValueError(
                f"A bounding box needs 4 values [south, north, west, east], got {list(bounds)}"
            )
        south, north, west, east = (float(v) for v in bounds)
        return cls(south=south, north=north, west=west, east=east)

    def as_list(self) -> list[float]:
        """Bounds in the order the files API expects them.

        This differs from the order accepted by `from_list`.

        Returns:
            [west, east, south, north]
        """
        return [self.west, self.east, self.south, self.north]

    def buffered(self, degrees: float) -> BoundingBox:
        """Return a bounding box widened by a margin on all sides.

        Latitudes are clamped to [-90, 90].

        Args:
            degrees: The margin in degrees.

        Returns:
            The widened bounding box.
        """
        return BoundingBox(
            south=max(self.south - degrees, -90.0),
            north=min(self.north + degrees, 90.0),
            west=self.west - degrees,
            east=self.east + degrees,
        )

    def __str__(self) -> str:
        return (
            f"south={self.south}, north={self.north}, west={self.west}, east={self.east}"
        )


@dataclass(frozen=True)
class CutoutResource:
    """A zip file with cropped files, prepared by the files API."""

    file_url: str
    file_name: str | None
    paths: tuple[str, ...]


def _batches(paths: Sequence[str], batch_size: int | None) -> list[list[str]]:
    if batch_size is None:
        return [list(paths)]
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    return [list(paths[i : i + batch_size]) for i in range(0, len(paths), batch_size)]


def _poll_cutout_job(
    client: ISIMIPClient,
    paths: list[str],
    bbox: BoundingBox,
    poll_interval: float,
    timeout: float | None,
) -> dict[str, Any] | None:
    parameters: dict[str, Any] = {"paths": paths, "bbox": bbox.as_list()}
    start_time: float = time.monotonic()
    job_url: str | None = None
    while True:
        try:
            if job_url is None:
                job = client.cutout_bbox(paths, *bbox.as_list())
            else:
                job = client.get_job(job_url)
        # the client raises RuntimeError when its files API version has no cutout_bbox,
        # and KeyError when it cannot log a job without id, status or meta
        except (requests.exceptions.RequestException, RuntimeError, KeyError) as e:
            raise CatalogLookupError(
                f"Cutout request failed: {e!r}", step="subset", parameters=parameters
            ) from e

        if not isinstance(job, dict):
            raise CatalogLookupError(
                "The ISIMIP files API returned no valid response for the cutout job",
                step="subset",
                parameters=parameters,
            )

        status = job.get("status")
        if status == "finished":
            return job
        elif status == "failed":
            logger.warning(
                f"Cutout job failed on the ISIMIP server for {len(paths)} file(s), "
                f"the bounding box ({bbox}) may lie outside the data"
            )
            return None
        elif status == "started":
            meta = job.get("meta") or {}
            logger.info(
                f"{meta.get('created_files', '?')}/{meta.get('total_files', '?')} files prepared on ISIMIP server, "
                f"waiting {poll_interval} seconds"
            )
        elif status == "queued":
            logger.info(
                f"Cutout queued on ISIMIP server, waiting {poll_interval} seconds"
            )
        else:
            raise CatalogLookupError(
                f"Unexpected cutout job status: {status!r}",
                step="subset",
                parameters=parameters,
            )

        job_url = job.get("job_url")
        if not job_url:
            raise CatalogLookupError(
                f"Cutout job is {status} but has no URL to poll",
                step="subset",
                parameters=parameters,
            )
        if timeout is not None and time.monotonic() - start_time > timeout:
            raise CatalogLookupError(
                f"Cutout job did not finish within {timeout} seconds",
                step="subset",
                parameters=parameters,
            )
        time.sleep(poll_interval)


def request_cutout(
    client: ISIMIPClient,
    paths: Sequence[str],
    bbox: BoundingBox,
    poll_interval: float = 10,
    timeout: float | None = None,
    batch_size: int | None = None,
) -> list[CutoutResource]:
    """Request cropped versions of files from the ISIMIP files API.

    Preparing a cutout can take from seconds to several minutes, during which the job
    status is polled every `poll_interval` seconds. The client must use version 2 of
    the files API, the default of isimip-client 2.

    A job that fails on the server, or finishes without a file, does not raise.
    It results in no resource for that batch of paths, so that the caller can report
    an empty result.

    Args:
        client: An ISIMIP client.
        paths: Repository paths of the files to crop.
        bbox: The extent to crop to.
        poll_interval: Seconds to wait between status requests.
        timeout: Maximum number of seconds to wait for a single job. None waits indefinitely.
        batch_size: Maximum number of paths per job. None submits a single job.

    Returns:
        One resource per finished job.

    Raises:
        CatalogLookupError: If a request fails or gets no response, the server reports
            an unknown status, or a job exceeds the timeout.
    """
    if not paths:
        return []

    resources: list[CutoutResource] = []
    for batch in _batches(paths, batch_size):
        logger.info(f"Requesting cutout of {len(batch)} file(s) for bounding box ({bbox})")
        job = _poll_cutout_job(client, batch, bbox, poll_interval, timeout)
        if job is None:
            continue
        file_url: str | None = job.get("file_url")
        if not file_url:
            logger.warning(
                f"Cutout job finished without a file for bounding box ({bbox})"
            )
            continue
        resources.append(
            CutoutResource(
                file_url=file_url,
                file_name=job.get("file_name"),
                paths=tuple(batch),
            )
        )
    return resources
