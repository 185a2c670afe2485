#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Perform inference and benchmark inference performance on a deserialized
TensorRT engine.

A CUDA context must be active (see :func:`beamrt.deploy.trt_utils.make_cuda_context`)
before an :class:`ExecutionContext` is created.
"""

import threading
import time
import warnings
from typing import Optional

import numpy as np
import pycuda.driver as cuda

from beamrt.deploy.bindings import (InferenceRequest, check_batch_size, check_host_buffer,
                                    split_bindings)
from beamrt.deploy.config import TrtConfig
from beamrt.deploy.trt import CompiledEngine
from beamrt.deploy.trt_utils import DeviceBuffer, pagelocked_buffer
from beamrt.errors import ExecutionError, InputSizeError


class ExecutionContext:
    """Runs inference on a :class:`~beamrt.deploy.trt.CompiledEngine`.

    The input and output bindings are resolved by role once, when the context is
    created. Each call to :meth:`infer` allocates device buffers for that call only,
    copies the input to the device, runs the engine and copies the result back, all
    on the context's own CUDA stream, and returns once the stream has drained.

    A context must not be used from more than one thread at a time. To run
    inferences concurrently, create one context per thread.

    :var BindingSpec input_binding:  Engine input
    :var BindingSpec output_binding: Engine output
    """

    def __init__(self, engine: CompiledEngine, config: Optional[TrtConfig] = None) -> None:
        if engine is None or engine.released:
            raise ExecutionError('Cannot create an execution context without an engine')
        self.engine = engine
        self.config = config if config is not None else TrtConfig()
        self.input_binding, self.output_binding = split_bindings(engine.bindings)

        self._context = engine.engine.create_execution_context()
        if self._context is None:
            raise ExecutionError('TensorRT could not create an execution context')
        try:
            self._stream = cuda.Stream()
        except cuda.Error as e:
            raise ExecutionError('Unable to create a CUDA stream: {}'.format(e)) from e
        self._busy = threading.Lock()

        if self.config.verbose:
            print('TensorRT Inference Settings:')
            print('  Max Batch Size       : {}'.format(engine.max_batch_size))
            print('  Input Layer')
            print('    Name               : {}'.format(self.input_binding.name))
            print('    Shape              : {}'.format(self.input_binding.shape))
            print('    dtype              : {}'.format(self.input_binding.dtype.name))
            print('  Output Layer')
            print('    Name               : {}'.format(self.output_binding.name))
            print('    Shape              : {}'.format(self.output_binding.shape))
            print('    dtype              : {}'.format(self.output_binding.dtype.name))

    @classmethod
    def create(cls, engine: CompiledEngine,
               config: Optional[TrtConfig] = None) -> 'ExecutionContext':
        return cls(engine, config)

    def infer(self, request: InferenceRequest,
              output: Optional[np.ndarray] = None) -> np.ndarray:
        """Run one batch through the engine.

        :param request: Host input buffer holding ``batch_size`` input items
        :param output:  Optional contiguous buffer to receive the result; page-locked
                        memory is allocated when omitted
        :return:        Flat array of ``batch_size x output elements`` results
        :raises InputSizeError:  if a buffer does not match the engine bindings
        :raises AllocationError: if device memory cannot be reserved
        :raises ExecutionError:  if the engine launch is rejected
        """
        if self._context is None:
            raise ExecutionError('Execution context has been released')
        if not self._busy.acquire(blocking=False):
            raise ExecutionError('Execution context is already running an inference')
        try:
            return self._infer(request, output)
        finally:
            self._busy.release()

    def _infer(self, request: InferenceRequest, output: Optional[np.ndarray]) -> np.ndarray:
        batch_size = request.batch_size
        check_batch_size(batch_size, self.engine.max_batch_size, self.input_binding)
        host_input = np.ascontiguousarray(request.input)
        check_host_buffer(host_input, self.input_binding, batch_size)

        if output is None:
            output = pagelocked_buffer(batch_size * self.output_binding.element_count,
                                       self.output_binding.dtype)
        elif not output.flags['C_CONTIGUOUS'] or not output.flags['WRITEABLE']:
            raise InputSizeError('Output buffer must be contiguous and writeable')
        check_host_buffer(output, self.output_binding, batch_size)

        with DeviceBuffer(self.input_binding.nbytes(batch_size)) as device_input, \
                DeviceBuffer(self.output_binding.nbytes(batch_size)) as device_output:
            # Buffers may only be freed once the stream has stopped using them
            try:
                self._enqueue(batch_size, host_input, output, device_input, device_output)
            except BaseException as error:
                try:
                    self._synchronize()
                except ExecutionError:
                    # Report the first failure; the drain error is kept as its context
                    raise error
                raise
            self._synchronize()
        return output

    def _enqueue(self, batch_size: int, host_input: np.ndarray, host_output: np.ndarray,
                 device_input: DeviceBuffer, device_output: DeviceBuffer) -> None:
        context = self._context
        if self.input_binding.dynamic_batch:
            input_shape = (batch_size,) + tuple(self.input_binding.shape[1:])
            if not context.set_input_shape(self.input_binding.name, input_shape):
                raise ExecutionError('Engine rejected input shape {}'.format(input_shape))
        context.set_tensor_address(self.input_binding.name, device_input.device)
        context.set_tensor_address(self.output_binding.name, device_output.device)

        try:
            # DMA the input to the GPU, execute the batch asynchronously, and DMA it back
            cuda.memcpy_htod_async(device_input.allocation, host_input, self._stream)
            if not context.execute_async_v3(self._stream.handle):
                raise ExecutionError('TensorRT rejected the inference launch '
                                     '(batch size {})'.format(batch_size))
            cuda.memcpy_dtoh_async(host_output, device_output.allocation, self._stream)
        except cuda.Error as e:
            raise ExecutionError('CUDA error during inference: {}'.format(e)) from e

    def _synchronize(self) -> None:
        try:
            self._stream.synchronize()
        except cuda.Error as e:
            raise ExecutionError('CUDA error while draining the stream: {}'.format(e)) from e

    def release(self) -> None:
        self._context = None
        self._stream = None

    def __enter__(self) -> 'ExecutionContext':
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def plan_bench(context: ExecutionContext,
               batch_size: Optional[int] = None,
               num_inferences: int = 100,
               seed: Optional[int] = None) -> float:
    """
    Benchmarks inference throughput of an execution context.

    .. note::
        When selecting a ``batch_size`` to benchmark, the selected size must be
        less than or equal to the ``max_batch_size`` the engine was compiled with.
        To accurately benchmark the result of TensorRT optimization, this benchmark
        should be run on the same computer that compiled the engine.

    :param context:        Execution context to benchmark
    :param batch_size:     How many input items are batched together in a single
                           inference call, defaults to the engine's maximum
    :param num_inferences: Number of inference calls to time
    :param seed:           Seed for the random input data
    :return:               Throughput in input elements per second
    """
    max_batch_size = context.engine.max_batch_size
    if batch_size is None:
        batch_size = max_batch_size
    elif batch_size != max_batch_size:
        warnings.warn('Unoptimized batch size detected', RuntimeWarning)

    # Populate input buffer with test data
    input_binding = context.input_binding
    buff_len = input_binding.element_count * batch_size
    rng = np.random.default_rng(seed)
    sample_buffer = pagelocked_buffer(buff_len, input_binding.dtype)
    sample_buffer[:] = rng.standard_normal(buff_len).astype(input_binding.dtype)
    output = pagelocked_buffer(context.output_binding.element_count * batch_size,
                               context.output_binding.dtype)
    request = InferenceRequest(sample_buffer, batch_size)

    # Time the DNN Execution
    start_time = time.monotonic()
    for _ in range(num_inferences):
        context.infer(request, output)
    elapsed_time = time.monotonic() - start_time
    total_samples = buff_len * num_inferences

    throughput = total_samples / elapsed_time
    rate_gbps = throughput * sample_buffer.itemsize * 8 / 1e9
    print('Result:')
    print('  Samples Processed : {:,}'.format(total_samples))
    print('  Processing Time   : {:0.3f} msec'.format(elapsed_time / 1e-3))
    print('  Throughput        : {:0.3f} MSPS'.format(throughput / 1e6))
    print('  Data Rate         : {:0.3f} Gbit / sec'.format(rate_gbps))
    return throughput
