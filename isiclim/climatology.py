"""Reduce gridded ISIMIP time series to a climatological mean per grid cell.

The steps are applied in a fixed order: the no-data values of the file are masked (and
packed values unpacked) first, then the time series is restricted to a window of years, and only
then averaged over time. Masking before averaging matters because ISIMIP sentinels are
very large numbers (typically 1e20) that would dominate any mean.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd
import xarray as xr
from dateutil.parser import parse as parse_date
from dateutil.relativedelta import relativedelta

from isiclim.errors import GridFormatError, IsiclimError

logger: logging.Logger = logging.getLogger("isiclim")

REQUIRED_DIMS: tuple[str, ...] = ("time", "lat", "lon")


def _decode_calendar_units(time: xr.DataArray) -> pd.DatetimeIndex:
    """Decode "months since" and "years since" units, which the CF decoders reject.

    ISIMIP output files of several sectors use these units with a monthly or annual
    time step.

    Args:
        time: The raw time coordinate.

    Returns:
        The decoded timestamps.
    """
    units: str = time.attrs["units"]
    step, _, origin_string = units.partition(" since ")
    origin: datetime = parse_date(origin_string)
    offsets = np.floor(np.asarray(time.values, dtype=np.float64)).astype(np.int64)
    if step == "months":
        timestamps = [origin + relativedelta(months=int(n)) for n in offsets]
    else:
        timestamps = [origin + relativedelta(years=int(n)) for n in offsets]
    return pd.DatetimeIndex(timestamps, name="time")


def decode_time(ds: xr.Dataset) -> xr.Dataset:
    """Decode the time coordinate of a dataset opened with `decode_times=False`.

    Args:
        ds: The dataset.

    Returns:
        The dataset with a decoded time coordinate.
    """
    units: str = ds["time"].attrs.get("units", "")
    if units.startswith(("months since", "years since")):
        return ds.assign_coords(time=_decode_calendar_units(ds["time"]))
    return xr.decode_cf(ds, mask_and_scale=False, decode_times=True)


def _select_variable(
    ds: xr.Dataset, variable: str | None, parameters: dict[str, str | None]
) -> xr.DataArray:
    if "time" not in ds.variables:
        raise GridFormatError("Grid file has no time coordinate", parameters=parameters)
    try:
        ds = decode_time(ds)
    except (ValueError, TypeError, OverflowError) as e:
        raise GridFormatError(
            f"Cannot decode time coordinate: {e}", parameters=parameters
        ) from e

    if variable is None:
        data_vars: list[str] = [str(name) for name in ds.data_vars]
        if len(data_vars) != 1:
            raise GridFormatError(
                f"Grid file contains {len(data_vars)} data variables, specify one of {data_vars}",
                parameters=parameters,
            )
        variable = data_vars[0]
    elif variable not in ds.data_vars:
        raise GridFormatError(
            f"Variable not found, available: {list(ds.data_vars)}",
            parameters=parameters,
        )

    da: xr.DataArray = ds[variable]
    missing_dims = [dim for dim in REQUIRED_DIMS if dim not in da.dims]
    if missing_dims:
        raise GridFormatError(
            f"Variable lacks dimension(s) {missing_dims}, found {list(da.dims)}",
            parameters=parameters,
        )
    return da.transpose("time", "lat", "lon", ...)


def load_grid(path: Path | str, variable: str | None = None) -> xr.DataArray:
    """Load a gridded time series from a NetCDF file.

    The file is opened without CF masking or unpacking, so that values equal to the
    no-data sentinel are still present and the sentinel is kept in the attributes.
    The data are read lazily: call `close()` on the result to release the file.

    Args:
        path: Path of the NetCDF file.
        variable: Name of the variable to load. If None, the file must contain exactly one data variable.

    Returns:
        The variable with dimensions time, lat and lon.

    Raises:
        GridFormatError: If the file cannot be read or lacks the expected structure.
    """
    parameters = {"path": str(path), "variable": variable}
    try:
        ds: xr.Dataset = xr.open_dataset(path, mask_and_scale=False, decode_times=False)
    except (OSError, ValueError) as e:
        raise GridFormatError(f"Cannot read grid file: {e}", parameters=parameters) from e

    try:
        da = _select_variable(ds, variable, parameters)
    except GridFormatError:
        ds.close()
        raise
    da.set_close(ds.close)
    return da


def read_sentinel(da: xr.DataArray) -> float:
    """Read the no-data sentinel declared by the file.

    Args:
        da: A variable loaded with `load_grid`.

    Returns:
        The value of the `missing_value` attribute, or of `_FillValue` if the former is absent.

    Raises:
        GridFormatError: If the variable declares no sentinel.
    """
    for attribute in ("missing_value", "_FillValue"):
        value = da.attrs.get(attribute, da.encoding.get(attribute))
        if value is not None:
            return float(np.asarray(value).ravel()[0])
    raise GridFormatError(
        "Variable declares no missing_value or _FillValue",
        parameters={"variable": da.name},
    )


def mask_sentinel(da: xr.DataArray, sentinel: float) -> xr.DataArray:
    """Replace no-data values by NaN.

    A positive sentinel, such as the 1e20 of ISIMIP files, masks every value at or above
    it. A zero or negative sentinel, as used for packed integers, masks exact matches only.
    Values that are already NaN stay NaN, so masking twice gives the same result as masking once.

    Args:
        da: The gridded time series, before unpacking.
        sentinel: The no-data sentinel.

    Returns:
        The masked time series, as floating point values.
    """
    if sentinel > 0:
        masked = da.where(da < sentinel)
    else:
        masked = da.where(da != sentinel)
    masked.attrs = {
        k: v for k, v in da.attrs.items() if k not in ("missing_value", "_FillValue")
    }
    return masked


def unpack(da: xr.DataArray) -> xr.DataArray:
    """Apply the `scale_factor` and `add_offset` attributes of a packed variable.

    Args:
        da: The masked time series.

    Returns:
        The time series in physical units. Unpacked variables are returned unchanged.
    """
    scale_factor = da.attrs.get("scale_factor")
    add_offset = da.attrs.get("add_offset")
    if scale_factor is None and add_offset is None:
        return da
    attrs = {
        k: v for k, v in da.attrs.items() if k not in ("scale_factor", "add_offset")
    }
    unpacked = da.astype(np.float64)
    if scale_factor is not None:
        unpacked = unpacked * float(np.asarray(scale_factor).ravel()[0])
    if add_offset is not None:
        unpacked = unpacked + float(np.asarray(add_offset).ravel()[0])
    unpacked.attrs = attrs
    return unpacked


def filter_years(da: xr.DataArray, start_year: int, end_year: int) -> xr.DataArray:
    """Keep the time steps whose year lies in [start_year, end_year].

    Args:
        da: The gridded time series.
        start_year: First year to keep.
        end_year: Last year to keep.

    Returns:
        The time steps in the window.

    Raises:
        ValueError: If start_year is after end_year.
    """
    if start_year > end_year:
        raise ValueError(
            f"start_year ({start_year}) must not be after end_year ({end_year})"
        )
    years = da["time"].dt.year
    return da.isel(time=((years >= start_year) & (years <= end_year)).values)


def aggregate_mean(da: xr.DataArray, skipna: bool = False) -> xr.DataArray:
    """Average the time series per grid cell.

    Args:
        da: The gridded time series.
        skipna: If False, a grid cell with any missing value gets a missing mean.
            If True, missing values are ignored.

    Returns:
        The mean per (lat, lon).
    """
    if da.sizes["time"] == 0:
        logger.warning("No time steps to average, climatology is entirely missing")
    return da.mean(dim="time", skipna=skipna, keep_attrs=True)


def compute_climatology(
    path: Path | str,
    variable: str | None,
    start_year: int,
    end_year: int,
    skipna: bool = False,
) -> xr.DataArray:
    """Compute the climatological mean of a variable over a window of years.

    Args:
        path: Path of the NetCDF file.
        variable: The variable to average. If None, the file's only data variable.
        start_year: First year of the window.
        end_year: Last year of the window.
        skipna: Whether missing values are ignored when averaging.

    Returns:
        The climatology with dimensions lat and lon, held in memory.

    Raises:
        GridFormatError: If the file cannot be loaded.
        IsiclimError: If the year window is invalid or averaging fails.
    """
    logger.info(f"Loading {path}")
    grid = load_grid(path, variable=variable)
    try:
        sentinel: float = read_sentinel(grid)
        logger.debug(f"Masking no-data values (sentinel {sentinel})")
        da = unpack(mask_sentinel(grid, sentinel))

        try:
            da = filter_years(da, start_year, end_year)
        except ValueError as e:
            raise IsiclimError(
                str(e),
                step="filter",
                parameters={"start_year": start_year, "end_year": end_year},
            ) from e
        logger.info(
            f"Averaging {da.sizes['time']} time steps between {start_year} and {end_year}"
        )

        try:
            climatology = aggregate_mean(da, skipna=skipna).load()
        except (ValueError, TypeError, MemoryError) as e:
            raise IsiclimError(
                f"Cannot average {da.name}: {e}",
                step="aggregate",
                parameters={"path": str(path), "variable": da.name},
            ) from e
    finally:
        grid.close()
    climatology.attrs["climatology_start_year"] = start_year
    climatology.attrs["climatology_end_year"] = end_year
    climatology.attrs["climatology_skipna"] = int(skipna)
    return climatology


def to_records(da: xr.DataArray) -> pd.DataFrame:
    """Convert a gridded time series to one row per (lat, lon, time).

    Returns:
        DataFrame with columns lat, lon, time and value.
    """
    return (
        da.rename("value")
        .to_dataframe()
        .reset_index()[["lat", "lon", "time", "value"]]
    )


def climatology_to_frame(da: xr.DataArray) -> pd.DataFrame:
    """Convert a climatology to a table indexed by (lat, lon).

    Returns:
        DataFrame with a (lat, lon) index and a single column named after the variable.
    """
    name = da.name if da.name is not None else "value"
    return da.rename(name).to_dataframe()[[name]]


def write_climatology(da: xr.DataArray, path: Path) -> Path:
    """Write a climatology to NetCDF or CSV, depending on the suffix of the path.

    Args:
        da: The climatology.
        path: Output path ending in .nc or .csv. The parent folder is created if needed.

    Returns:
        The path written to.

    Raises:
        ValueError: If the suffix is not supported.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix == ".nc":
        da.to_netcdf(path)
    elif path.suffix == ".csv":
        climatology_to_frame(da).to_csv(path)
    else:
        raise ValueError(f"Unsupported file format for climatology: {path.suffix}")
    return path
