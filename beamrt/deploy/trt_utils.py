#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
CUDA memory helpers used when running inference with TensorRT.
"""

import atexit

import numpy as np
import pycuda.driver as cuda

from beamrt.errors import AllocationError, DeviceError


def make_cuda_context(gpu_index: int = 0) -> cuda.Context:
    """Initializes a CUDA context for use with the selected GPU and makes it active.

    The context is popped automatically when the interpreter exits.

    :param gpu_index: Which GPU in the system to use, defaults to the first GPU (index 0)
    :raises DeviceError: if CUDA cannot be initialized on that GPU
    """
    try:
        cuda.init()
        cuda_context = cuda.Device(gpu_index).make_context(cuda.ctx_flags.SCHED_AUTO)
    except cuda.Error as e:
        raise DeviceError('Unable to create a CUDA context on GPU {}: {}'.format(gpu_index, e)) from e
    atexit.register(cuda_context.pop)  # ensure context is cleaned up
    return cuda_context


def pagelocked_buffer(num_elems: int, dtype: np.number) -> np.ndarray:
    """Allocate page-locked host memory so that stream copies are truly asynchronous."""
    try:
        return cuda.pagelocked_empty(num_elems, dtype)
    except cuda.Error as e:
        raise AllocationError('Unable to allocate {:,} page-locked elements: {}'.format(
            num_elems, e)) from e


class DeviceBuffer:
    """A block of device memory that is freed exactly once.

    Use it as a context manager so the memory is released on every exit path:

    .. code-block:: python

        with DeviceBuffer(nbytes) as buffer:
            cuda.memcpy_htod_async(buffer.allocation, host_array, stream)
            ...
    """

    def __init__(self, nbytes: int) -> None:
        """
        :param int nbytes: Size of the allocation in bytes
        :raises AllocationError: if the device cannot reserve the memory
        """
        self.nbytes = nbytes
        try:
            self.allocation = cuda.mem_alloc(nbytes)
        except cuda.Error as e:
            raise AllocationError('Unable to allocate {:,} bytes of device memory: {}'.format(
                nbytes, e)) from e

    @property
    def device(self) -> int:
        """Device pointer to hand to TensorRT."""
        return int(self.allocation)

    def free(self) -> None:
        if self.allocation is not None:
            self.allocation.free()
            self.allocation = None

    def __enter__(self) -> 'DeviceBuffer':
        return self

    def __exit__(self, *exc_info) -> None:
        self.free()
