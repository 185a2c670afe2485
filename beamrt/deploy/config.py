#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Settings shared by the compile, deserialize and inference stages.
"""

import os
from typing import NamedTuple, Optional, Tuple, Union

import tensorrt as trt

from beamrt.fileio import DEFAULT_SEARCH_DIRS


class ModelDescriptor(NamedTuple):
    """Which model to compile and the largest batch it must support.

    :param path:           Model file name, looked up in ``search_dirs``
    :param max_batch_size: Largest batch size inference will be run with
    :param search_dirs:    Ordered directories to look for ``path`` in
    """
    path: Union[str, os.PathLike]
    max_batch_size: int = 1
    search_dirs: Tuple[Union[str, os.PathLike], ...] = DEFAULT_SEARCH_DIRS


class TrtConfig:
    """TensorRT settings passed explicitly to each stage of the pipeline.

    :param int accelerator_core:
        DLA core to build for and deserialize onto, or ``-1`` to run on the GPU
    :param int workspace_size:
        Maximum scratch memory that the TensorRT optimizer may use, defaults to 1GB
    :param bool fp16:
        Allow reduced precision (float16) layers if performance would improve
        (always enabled when ``accelerator_core`` selects a DLA core, since DLA does
        not run float32 layers)
    :param trt.Logger logger:
        Receives TensorRT messages, defaults to a logger at ``WARNING`` severity
    :param bool verbose:
        Print information about compiled and loaded engines
    """

    def __init__(self,
                 accelerator_core: int = -1,
                 workspace_size: int = 1 << 30,
                 fp16: bool = False,
                 logger: Optional[trt.ILogger] = None,
                 verbose: bool = False) -> None:
        if accelerator_core < -1:
            raise ValueError('accelerator_core must be -1 or a core index, '
                             'got {}'.format(accelerator_core))
        self.accelerator_core = accelerator_core
        self.workspace_size = workspace_size
        self.fp16 = fp16
        self.logger = logger if logger is not None else trt.Logger(trt.Logger.WARNING)
        self.verbose = verbose

    @property
    def uses_dla(self) -> bool:
        return self.accelerator_core >= 0
