#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Host side file handling: locating model files and reading/writing the raw
sample files fed to and produced by the beamformer.

Sample files are headerless, row-major arrays of ``float32`` values. The file
carries no shape information, so the expected element count always comes from
the compiled engine.
"""

import os
import pathlib
from typing import Iterable, Union

import numpy as np

from beamrt.errors import HostIOError, NotFoundError

DEFAULT_SEARCH_DIRS = ('data/samples/beamformer/', 'data/beamformer/')
"""Directories searched, in order, for a model file given by name"""


def locate_file(file_name: Union[str, os.PathLike],
                search_dirs: Iterable[Union[str, os.PathLike]] = DEFAULT_SEARCH_DIRS
                ) -> pathlib.Path:
    """Find a file by trying each search directory in order.

    A path that already points to an existing file is returned as is, ahead of
    every search directory, so a file of that name in the working directory
    takes precedence over the ordered search list. Otherwise the first
    ``search_dir / file_name`` that exists wins.

    :param file_name:   Name (or relative path) of the file to find
    :param search_dirs: Ordered candidate directories
    :return:            Path of the first match
    :raises NotFoundError: if no candidate exists
    """
    file_name = pathlib.Path(file_name)
    if file_name.is_file():
        return file_name

    tried = []
    for directory in search_dirs:
        candidate = pathlib.Path(directory) / file_name
        if candidate.is_file():
            return candidate
        tried.append(str(candidate))
    raise NotFoundError('Could not find {} in: {}'.format(file_name, ', '.join(tried) or '<none>'))


def read_floats(path: Union[str, os.PathLike], count: int,
                dtype: np.number = np.float32) -> np.ndarray:
    """Read exactly ``count`` values from a raw binary sample file.

    :param path:  File to read
    :param count: Number of elements expected in the file
    :param dtype: Element type stored in the file
    :return:      1-D array of ``count`` elements
    :raises HostIOError: if the file cannot be read or has the wrong size
    """
    expected = count * np.dtype(dtype).itemsize
    try:
        actual = os.path.getsize(path)
        if actual != expected:
            raise HostIOError('{} holds {} bytes, expected {} ({} x {})'.format(
                path, actual, expected, count, np.dtype(dtype).name))
        return np.fromfile(path, dtype=dtype, count=count)
    except HostIOError:
        raise
    except OSError as e:
        raise HostIOError('Unable to read {}: {}'.format(path, e)) from e


def write_floats(path: Union[str, os.PathLike], data: np.ndarray) -> None:
    """Write an array to disk as raw row-major values, with no header.

    :param path: Destination file, overwritten if it exists
    :param data: Values to write
    :raises HostIOError: if the file cannot be written
    """
    try:
        np.ascontiguousarray(data).tofile(str(path))
    except OSError as e:
        raise HostIOError('Unable to write {}: {}'.format(path, e)) from e
