"""Run the complete chain: search, resolve, crop, download and average."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests
from isimip_client.client import ISIMIPClient

from isiclim.catalog.cutout import BoundingBox, request_cutout
from isiclim.catalog.query import (
    CatalogConfig,
    CatalogResult,
    QueryParameters,
    query_catalog,
)
from isiclim.catalog.resolve import resolve_files
from isiclim.climatology import compute_climatology, write_climatology
from isiclim.errors import IsiclimError
from isiclim.workflows.io import DownloadReport, download_resources

logger: logging.Logger = logging.getLogger("isiclim")


@dataclass
class PipelineResult:
    """Everything a pipeline run produced."""

    catalog: CatalogResult
    urls: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    downloads: DownloadReport = field(default_factory=DownloadReport)
    climatologies: list[Path] = field(default_factory=list)
    errors: list[IsiclimError] = field(default_factory=list)


def climatology_output_path(
    grid_file: Path, output_folder: Path, start_year: int, end_year: int, fmt: str
) -> Path:
    return output_folder / f"{grid_file.stem}_climatology_{start_year}_{end_year}.{fmt}"


def run_pipeline(
    config: dict[str, Any],
    client: ISIMIPClient | None = None,
    session: requests.Session | None = None,
) -> PipelineResult:
    """Run the pipeline described by a configuration.

    Downloads and climatologies are processed file by file. A failure is logged
    and recorded in the result, and the remaining files are still processed.

    Args:
        config: A configuration as returned by `isiclim.config.load_config`.
        client: The ISIMIP client to use. If None, one is created from the catalog section.
        session: The requests session used for downloads. If None, a new session is used.

    Returns:
        The outcome of the run.

    Raises:
        CatalogLookupError: If the catalog search or a cutout request fails.
    """
    if client is None:
        client = CatalogConfig.from_mapping(config.get("catalog")).create_client()

    parameters = QueryParameters.from_mapping(config["query"])
    catalog = query_catalog(client, parameters)
    result = PipelineResult(catalog=catalog)
    if not catalog.datasets:
        logger.warning(f"No datasets found for {parameters.to_filters()}")
        return result

    resolve_config: dict[str, Any] = config.get("resolve") or {}
    files = resolve_files(
        catalog.datasets, deduplicate=resolve_config.get("deduplicate", False)
    )
    result.urls = [file.file_url for file in files]
    result.paths = [file.path for file in files]
    logger.info(f"Resolved {len(files)} file(s)")

    cutout_config: dict[str, Any] = config.get("cutout") or {}
    if cutout_config.get("bbox") is not None:
        bbox = BoundingBox.from_list(cutout_config["bbox"])
        if cutout_config.get("buffer"):
            bbox = bbox.buffered(cutout_config["buffer"])
        resources = request_cutout(
            client,
            result.paths,
            bbox,
            poll_interval=cutout_config.get("poll_interval", 10),
            timeout=cutout_config.get("timeout"),
            batch_size=cutout_config.get("batch_size"),
        )
        if not resources:
            logger.warning(
                f"Cutout for bounding box ({bbox}) produced no files"
            )
            return result
        download_urls: list[str] = [resource.file_url for resource in resources]
        # cutouts are new files, the checksums of the global files do not apply
        checksums: list[str | None] = [None] * len(download_urls)
    else:
        download_urls = result.urls
        checksums = [file.checksum for file in files]

    download_config: dict[str, Any] = config.get("download") or {}
    result.downloads = download_resources(
        download_urls,
        Path(download_config.get("folder", "downloads")),
        checksums=checksums,
        validate=download_config.get("validate", True),
        extract=download_config.get("extract", True),
        overwrite=download_config.get("overwrite", False),
        session=session,
    )
    result.errors.extend(result.downloads.errors)

    climatology_config: dict[str, Any] = config["climatology"]
    output_folder = Path(climatology_config.get("output_folder", "output"))
    start_year: int = climatology_config["start_year"]
    end_year: int = climatology_config["end_year"]
    grid_files = [f for f in result.downloads.files if f.suffix == ".nc"]
    for grid_file in grid_files:
        try:
            climatology = compute_climatology(
                grid_file,
                variable=climatology_config.get("variable"),
                start_year=start_year,
                end_year=end_year,
                skipna=climatology_config.get("skipna", False),
            )
            output_path = write_climatology(
                climatology,
                climatology_output_path(
                    grid_file,
                    output_folder,
                    start_year,
                    end_year,
                    climatology_config.get("format", "nc"),
                ),
            )
        except IsiclimError as e:
            logger.error(str(e))
            result.errors.append(e)
            continue
        logger.info(f"Climatology written to {output_path}")
        result.climatologies.append(output_path)
    return result
