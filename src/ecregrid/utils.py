from __future__ import annotations

import datetime
import os
from typing import Union

import xarray as xr

from .errors import ConfigurationError


def update_history(
    obj: Union[xr.DataArray, xr.Dataset], message: str
) -> Union[xr.DataArray, xr.Dataset]:
    """
    Update the 'history' attribute of an xarray object with a timestamped message.

    Parameters
    ----------
    obj : xr.DataArray or xr.Dataset
        The xarray object to update.
    message : str
        The message to add to the history.

    Returns
    -------
    xr.DataArray or xr.Dataset
        The updated xarray object.
    """
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    full_message = f"{timestamp}: {message}"
    if "history" in obj.attrs:
        obj.attrs["history"] = f"{full_message}\n" + obj.attrs["history"]
    else:
        obj.attrs["history"] = full_message
    return obj


def locate_file(fname: str, env_var: str = "MODELE_FILE_PATH") -> str:
    """
    Find an input file, searching the directories listed in an environment variable.

    Absolute paths and paths that exist relative to the working directory
    are returned unchanged.

    Parameters
    ----------
    fname : str
        File name or path.
    env_var : str, default 'MODELE_FILE_PATH'
        Environment variable holding an ``os.pathsep`` separated search path.

    Returns
    -------
    str
        Path of the located file.

    Raises
    ------
    ConfigurationError
        If the file cannot be found.
    """
    if os.path.isabs(fname) or os.path.exists(fname):
        if not os.path.exists(fname):
            raise ConfigurationError(f"Input file '{fname}' does not exist.")
        return fname

    search = os.environ.get(env_var, "")
    for directory in search.split(os.pathsep):
        if not directory:
            continue
        candidate = os.path.join(directory, fname)
        if os.path.exists(candidate):
            return candidate

    raise ConfigurationError(
        f"Could not locate input file '{fname}' in the working directory "
        f"or in ${env_var}='{search}'."
    )
