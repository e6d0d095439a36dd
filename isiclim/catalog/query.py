"""Search the ISIMIP repository for datasets matching a set of specifiers."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Mapping

import requests
from isimip_client.client import ISIMIPClient

from isiclim.errors import (
    CatalogLookupError,
    ConfigurationError,
    QueryParameterError,
)

logger: logging.Logger = logging.getLogger("isiclim")

ISIMIP_DATA_URL_DEFAULT: str = "https://data.isimip.org/api/v1"


@dataclass(frozen=True)
class CatalogConfig:
    """Connection settings for the ISIMIP repository.

    The configuration is held by the caller and passed explicitly to every step that
    talks to the repository. It is never changed after construction.

    If `files_api_url` is not set, the default of the installed isimip-client is used.
    """

    data_url: str = field(
        default_factory=lambda: os.environ.get(
            "ISIMIP_DATA_URL", ISIMIP_DATA_URL_DEFAULT
        )
    )
    files_api_url: str | None = field(
        default_factory=lambda: os.environ.get("ISIMIP_FILES_API_URL")
    )
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any] | None) -> CatalogConfig:
        """Create a catalog configuration from the `catalog` section of a config file.

        Args:
            mapping: Mapping with any of the keys data_url, files_api_url, username and password.

        Returns:
            The catalog configuration. Keys that are not given fall back to the defaults.

        Raises:
            ConfigurationError: If the mapping contains an unknown key.
        """
        mapping = dict(mapping or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown catalog setting(s): {', '.join(unknown)}",
                parameters={"allowed": sorted(known)},
            )
        return cls(**{k: v for k, v in mapping.items() if v is not None})

    def create_client(self) -> ISIMIPClient:
        """Create an ISIMIP client for this configuration.

        Returns:
            A client for the ISIMIP data and files APIs.
        """
        kwargs: dict[str, Any] = {"data_url": self.data_url}
        if self.files_api_url is not None:
            kwargs["files_api_url"] = self.files_api_url
        if self.username is not None and self.password is not None:
            kwargs["auth"] = (self.username, self.password)
        return ISIMIPClient(**kwargs)


@dataclass(frozen=True)
class QueryParameters:
    """Specifiers used to search the ISIMIP repository.

    Only attributes that are set are sent to the repository. The names match the
    controlled vocabulary of the ISIMIP protocol.
    """

    simulation_round: str | None = None
    product: str | None = None
    climate_forcing: str | None = None
    climate_scenario: str | None = None
    model: str | None = None
    variable: str | None = None
    climate_variable: str | None = None
    sector: str | None = None
    period: str | None = None
    resolution: str | None = None
    time_step: str | None = None
    region: str | None = None
    soc_scenario: str | None = None
    sens_scenario: str | None = None
    bias_adjustment: str | None = None

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if value is not None and not isinstance(value, str):
                raise QueryParameterError(
                    f"Query parameter '{name}' must be a string, got {type(value).__name__}",
                    parameters={name: value},
                )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> QueryParameters:
        """Create query parameters from a loosely typed mapping.

        Args:
            mapping: Mapping from attribute name to value.

        Returns:
            The query parameters.

        Raises:
            QueryParameterError: If an attribute name is not recognised.
        """
        mapping = dict(mapping)
        known: set[str] = {f.name for f in fields(cls)}
        unknown: list[str] = sorted(set(mapping) - known)
        if unknown:
            raise QueryParameterError(
                f"Unknown query attribute(s): {', '.join(unknown)}",
                parameters={"allowed": sorted(known)},
            )
        return cls(**mapping)

    def to_filters(self) -> dict[str, str]:
        """Return the filters that are sent to the repository.

        Returns:
            Mapping of the set attributes to their values.
        """
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class FileDescriptor:
    """A single file of a dataset in the ISIMIP repository."""

    name: str
    path: str
    file_url: str
    size: int | None = None
    checksum: str | None = None
    checksum_type: str | None = None

    @classmethod
    def from_response(cls, file: Mapping[str, Any]) -> FileDescriptor:
        path: str = file["path"]
        return cls(
            name=file.get("name") or path.rsplit("/", 1)[-1],
            path=path,
            file_url=file["file_url"],
            size=file.get("size"),
            checksum=file.get("checksum"),
            checksum_type=file.get("checksum_type"),
        )


@dataclass(frozen=True)
class DatasetDescriptor:
    """A dataset found in the ISIMIP repository, with its specifiers and files."""

    id: str | None
    name: str | None
    path: str | None
    specifiers: dict[str, Any] = field(default_factory=dict)
    files: tuple[FileDescriptor, ...] = ()

    @classmethod
    def from_response(cls, dataset: Mapping[str, Any]) -> DatasetDescriptor:
        return cls(
            id=dataset.get("id"),
            name=dataset.get("name"),
            path=dataset.get("path"),
            specifiers=dict(dataset.get("specifiers", {})),
            files=tuple(
                FileDescriptor.from_response(file) for file in dataset.get("files", [])
            ),
        )


@dataclass(frozen=True)
class CatalogResult:
    """The result of a catalog search."""

    count: int
    datasets: tuple[DatasetDescriptor, ...]


def _page_results(page: Any, filters: dict[str, str]) -> list[Any]:
    if page is None:
        # isimip-client logs HTTP errors and returns None instead of raising
        raise CatalogLookupError(
            "No valid response from the ISIMIP repository",
            step="query",
            parameters=filters,
        )
    if not isinstance(page, Mapping) or not isinstance(page.get("results"), list):
        raise CatalogLookupError(
            "Malformed response from the ISIMIP repository, 'results' is missing",
            step="query",
            parameters=filters,
        )
    return page["results"]


def query_catalog(client: ISIMIPClient, parameters: QueryParameters) -> CatalogResult:
    """Search the ISIMIP repository.

    The repository returns its results in pages. All pages are requested by following
    the `next` link of each page, so that no dataset is silently left out.

    An empty result is a valid result and is returned as such.

    Args:
        client: An ISIMIP client, usually created with `CatalogConfig.create_client`.
        parameters: The specifiers to search for.

    Returns:
        The number of matching datasets and their descriptors, in the order the
        repository returns them.

    Raises:
        CatalogLookupError: If the repository cannot be reached or returns a malformed response.
    """
    filters: dict[str, str] = parameters.to_filters()
    logger.debug(f"Querying ISIMIP repository with {filters}")
    try:
        page = client.datasets(paginate=True, **filters)
        results: list[Any] = list(_page_results(page, filters))
        count: int = int(page.get("count", len(results)))
        while page.get("next"):
            logger.debug(
                f"Retrieved {len(results)}/{count} dataset(s), requesting {page['next']}"
            )
            page = client.get(page["next"])
            results.extend(_page_results(page, filters))
    except (requests.RequestException, ValueError, TypeError) as e:
        raise CatalogLookupError(
            f"Could not query the ISIMIP repository: {e}",
            step="query",
            parameters=filters,
        ) from e

    try:
        datasets = tuple(DatasetDescriptor.from_response(dataset) for dataset in results)
    except (KeyError, TypeError, AttributeError) as e:
        raise CatalogLookupError(
            f"Malformed dataset in response from the ISIMIP repository: {e}",
            step="query",
            parameters=filters,
        ) from e

    if count != len(datasets):
        logger.warning(
            f"The ISIMIP repository reported {count} dataset(s) but returned {len(datasets)}"
        )
    logger.info(f"Found {len(datasets)} dataset(s) in the ISIMIP repository")
    return CatalogResult(count=count, datasets=datasets)
