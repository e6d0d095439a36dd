"""Turn dataset descriptors into the files that can be downloaded."""

from __future__ import annotations

from typing import Iterable

from isiclim.catalog.query import DatasetDescriptor, FileDescriptor


def resolve_files(
    datasets: Iterable[DatasetDescriptor], deduplicate: bool = False
) -> list[FileDescriptor]:
    """Collect the files of all datasets.

    Files are returned in dataset order, and in file order within each dataset.

    Args:
        datasets: The dataset descriptors returned by the catalog.
        deduplicate: If True, a file whose path was already seen is skipped.
            By default a file listed under two datasets is returned twice.

    Returns:
        The file descriptors.
    """
    files: list[FileDescriptor] = []
    seen: set[str] = set()
    for dataset in datasets:
        for file in dataset.files:
            if deduplicate:
                if file.path in seen:
                    continue
                seen.add(file.path)
            files.append(file)
    return files


def resolve_resources(
    datasets: Iterable[DatasetDescriptor], deduplicate: bool = False
) -> tuple[list[str], list[str]]:
    """Extract the download URLs and path identifiers of all files.

    Args:
        datasets: The dataset descriptors returned by the catalog.
        deduplicate: Whether to drop files that appear more than once. See `resolve_files`.

    Returns:
        Two lists of equal length: the full-extent download URLs and the paths
        identifying the files in the repository.
    """
    files = resolve_files(datasets, deduplicate=deduplicate)
    urls: list[str] = [file.file_url for file in files]
    paths: list[str] = [file.path for file in files]
    return urls, paths
