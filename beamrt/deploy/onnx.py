#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Perform reference inference and benchmark inference performance using the ONNX Runtime.

Results from the CPU reference are used to check that an optimized TensorRT
engine still computes what the trained model computes.
"""

import os
import time
from typing import Callable, Optional, Union

import numpy as np
import onnxruntime

from beamrt.errors import BindingMismatchError


def make_infer_func(onnx_file: Union[str, os.PathLike]) -> Callable[[np.ndarray], np.ndarray]:
    """Set up an ``onnxruntime`` session for a model with one input and one output."""
    sess = onnxruntime.InferenceSession(str(onnx_file), providers=['CPUExecutionProvider'])
    input_meta = sess.get_inputs()[0]
    input_name = input_meta.name
    label_name = sess.get_outputs()[0].name
    item_shape = list(input_meta.shape[1:])
    if not all(isinstance(dim, int) and dim >= 0 for dim in item_shape):
        raise BindingMismatchError('Input {} has a dynamic non-batch dimension: {}'.format(
            input_name, tuple(input_meta.shape)))

    def infer_func(x):
        # Flat host buffers are reshaped to (batch, ...) using the model's item shape
        batch = x.size // int(np.prod(item_shape, dtype=np.int64))
        return sess.run([label_name], {input_name: x.reshape([batch] + item_shape)})[0]
    return infer_func


def onnx_infer(onnx_file: Union[str, os.PathLike], x: np.ndarray) -> np.ndarray:
    """Run a single inference with ``onnxruntime`` and return the flattened output."""
    return np.ravel(make_infer_func(onnx_file)(x))


def onnx_bench(onnx_file: Union[str, os.PathLike],
               input_elems: int,
               batch_size: int = 1,
               num_inferences: Optional[int] = 100,
               input_dtype: np.number = np.float32) -> float:
    """
    Benchmarks a saved model using the ``onnxruntime`` inference engine.

    :param onnx_file:      Saved model file (``.onnx`` format)
    :param input_elems:    Number of input values in one batch item
    :param batch_size:     How many input items are batched together in a single
                           inference call
    :param num_inferences: Number of iterations to execute inference between
                           measurements of inference throughput
    :param input_dtype:    Data type of a single input value
    :return:               Throughput in input elements per second
    """
    infer_func = make_infer_func(onnx_file)

    # Populate input buffer with test data
    buff_len = input_elems * batch_size
    sample_buffer = np.random.randn(buff_len).astype(input_dtype)

    # Time the DNN Execution
    start_time = time.monotonic()
    for _ in range(num_inferences):
        infer_func(sample_buffer)
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
