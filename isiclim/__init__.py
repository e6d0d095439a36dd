"""isiclim discovers ISIMIP datasets, downloads (optionally cropped) NetCDF files and reduces them to climatologies."""

import os
from importlib.metadata import version
from importlib.resources import files
from pathlib import Path
from typing import cast

from dotenv import load_dotenv

__version__: str = version("isiclim")

# set environment variable for isiclim package directory
ISICLIM_PACKAGE_DIR = cast(Path, files("isiclim"))
os.environ["ISICLIM_PACKAGE_DIR"] = str(ISICLIM_PACKAGE_DIR)

# Load environment variables from .env file, e.g. ISIMIP_DATA_URL or ISICLIM_DATA_ROOT
load_dotenv()
