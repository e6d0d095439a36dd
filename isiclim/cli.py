"""Command line interface for isiclim."""

import functools
import logging
from pathlib import Path
from typing import Any, Callable

import click

from isiclim import __version__
from isiclim.catalog.query import CatalogConfig, QueryParameters, query_catalog
from isiclim.catalog.resolve import resolve_resources
from isiclim.climatology import compute_climatology, write_climatology
from isiclim.config import load_config
from isiclim.errors import IsiclimError
from isiclim.pipeline import run_pipeline
from isiclim.workflows.io import WorkingDirectory, download_resource

WORKING_DIRECTORY_DEFAULT: Path = Path(".")
CONFIG_DEFAULT: Path = Path("isiclim.yml")
DOWNLOAD_FOLDER_DEFAULT: Path = Path("downloads")


def create_logger(fp: Path) -> logging.Logger:
    """Create logger with console and file handler.

    Args:
        fp: Path to the log file.

    Returns:
        Logger instance.
    """
    logger = logging.getLogger("isiclim")
    # remove any previous handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    logger.addHandler(ch)
    Path(fp).parent.mkdir(exist_ok=True, parents=True)
    fh = logging.FileHandler(fp)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    return logger


def parse_query_options(params: tuple[str, ...]) -> QueryParameters:
    """Parse repeated `key=value` options into query parameters.

    Raises:
        click.BadParameter: If an option is not of the form key=value.
    """
    mapping: dict[str, str] = {}
    for param in params:
        key, sep, value = param.partition("=")
        if not sep or not key:
            raise click.BadParameter(
                f"Expected key=value, got '{param}'", param_hint="--param"
            )
        mapping[key.strip()] = value.strip()
    return QueryParameters.from_mapping(mapping)


def report_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator turning isiclim errors into a click error with exit code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except IsiclimError as e:
            raise click.ClickException(str(e)) from e

    return wrapper


def click_query_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to add the catalog query options to a click command.

    Args:
        func: Function to decorate.

    Returns:
        Decorated function.
    """

    @click.option(
        "--param",
        "-p",
        "params",
        multiple=True,
        help="Catalog specifier as key=value, e.g. -p simulation_round=ISIMIP3b. Can be repeated.",
    )
    @click.option(
        "--data-url",
        default=None,
        help="Base URL of the ISIMIP data API. Defaults to $ISIMIP_DATA_URL or the public repository.",
    )
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return wrapper


@click.group()
@click.version_option(__version__, message="isiclim version: %(version)s")
@click.pass_context
def cli(context: click.core.Context) -> None:
    """Search, download and average ISIMIP datasets.

    Args:
        context: Click context. (Auto-filled by click)
    """
    if context.obj is None:
        context.obj = {}


@cli.command()
@click_query_options
@report_errors
def query(params: tuple[str, ...], data_url: str | None) -> None:
    """Search the ISIMIP repository and list the matching datasets."""
    parameters = parse_query_options(params)
    catalog_config = CatalogConfig.from_mapping({"data_url": data_url})
    result = query_catalog(catalog_config.create_client(), parameters)
    click.echo(f"{result.count} dataset(s) found")
    for dataset in result.datasets:
        click.echo(f"{dataset.name or dataset.id} ({len(dataset.files)} file(s))")


@cli.command()
@click_query_options
@click.option(
    "--deduplicate",
    is_flag=True,
    default=False,
    help="List a file only once if it belongs to several datasets.",
)
@report_errors
def resolve(params: tuple[str, ...], data_url: str | None, deduplicate: bool) -> None:
    """List the download URL and repository path of every matching file."""
    parameters = parse_query_options(params)
    catalog_config = CatalogConfig.from_mapping({"data_url": data_url})
    result = query_catalog(catalog_config.create_client(), parameters)
    urls, paths = resolve_resources(result.datasets, deduplicate=deduplicate)
    for url, path in zip(urls, paths):
        click.echo(f"{path}\t{url}")


@cli.command()
@click.argument("url", required=True)
@click.option(
    "--folder",
    "-f",
    type=click.Path(path_type=Path),
    default=DOWNLOAD_FOLDER_DEFAULT,
    help=f"Folder to download into. Defaults to '{DOWNLOAD_FOLDER_DEFAULT}'.",
)
@click.option(
    "--validate/--no-validate",
    default=True,
    help="Check the size of the download. Skipping this is faster but unsafe.",
)
@click.option(
    "--extract/--no-extract",
    default=True,
    help="Extract zip archives after download.",
)
@report_errors
def download(url: str, folder: Path, validate: bool, extract: bool) -> None:
    """Download URL into a folder."""
    create_logger(folder / "download.log")
    for path in download_resource(url, folder, validate=validate, extract=extract):
        click.echo(str(path))


@cli.command()
@click.argument("file", type=click.Path(path_type=Path, exists=True))
@click.option("--variable", "-v", default=None, help="Variable to average.")
@click.option("--start-year", type=int, required=True, help="First year (inclusive).")
@click.option("--end-year", type=int, required=True, help="Last year (inclusive).")
@click.option(
    "--skipna",
    is_flag=True,
    default=False,
    help="Ignore missing values instead of propagating them to the mean.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output file (.nc or .csv). Defaults to <FILE>_climatology_<start>_<end>.nc.",
)
@report_errors
def climatology(
    file: Path,
    variable: str | None,
    start_year: int,
    end_year: int,
    skipna: bool,
    output: Path | None,
) -> None:
    """Compute the mean of FILE per grid cell over a window of years."""
    if start_year > end_year:
        raise click.BadParameter(
            "must not be after --end-year", param_hint="--start-year"
        )
    if output is None:
        output = file.with_name(
            f"{file.stem}_climatology_{start_year}_{end_year}.nc"
        )
    if output.suffix not in (".nc", ".csv"):
        raise click.BadParameter("must end in .nc or .csv", param_hint="--output")
    da = compute_climatology(
        file,
        variable=variable,
        start_year=start_year,
        end_year=end_year,
        skipna=skipna,
    )
    click.echo(str(write_climatology(da, output)))


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default=CONFIG_DEFAULT,
    help=f"Path of the run configuration file. Defaults to '{CONFIG_DEFAULT}'.",
)
@click.option(
    "--working-directory",
    "-wd",
    type=click.Path(path_type=Path, file_okay=False),
    default=WORKING_DIRECTORY_DEFAULT,
    help="Working directory for the run. Default is the current directory.",
)
@report_errors
def run(config: Path, working_directory: Path) -> None:
    """Run the full pipeline: search, resolve, crop, download and average."""
    with WorkingDirectory(working_directory):
        create_logger(Path("isiclim.log"))
        result = run_pipeline(load_config(config))
        for path in result.climatologies:
            click.echo(str(path))
        if result.errors:
            raise click.ClickException(
                f"{len(result.errors)} step(s) failed, see isiclim.log"
            )
