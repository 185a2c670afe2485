#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Description and validation of an engine's input and output bindings.

An engine used by this package must expose exactly one input binding and one
output binding. The first dimension of each binding is the batch dimension;
it is ``-1`` when the engine was compiled with a dynamic batch size.
"""

from typing import NamedTuple, Sequence, Tuple

import numpy as np

from beamrt.errors import BindingMismatchError, InputSizeError

EXPECTED_BINDINGS = 2


class BindingSpec(NamedTuple):
    index: int
    name: str
    is_input: bool
    shape: Tuple[int, ...]
    dtype: np.dtype

    @property
    def element_count(self) -> int:
        """Number of elements in one batch item."""
        return int(np.prod(self.shape[1:], dtype=np.int64))

    @property
    def dynamic_batch(self) -> bool:
        return self.shape[0] == -1

    def nbytes(self, batch_size: int) -> int:
        return batch_size * self.element_count * np.dtype(self.dtype).itemsize

    def describe(self) -> str:
        role = 'Input' if self.is_input else 'Output'
        return 'Binding {} ({}): {}. shape={} dtype={}'.format(
            self.index, self.name, role, tuple(self.shape), np.dtype(self.dtype).name)


class InferenceRequest(NamedTuple):
    """Host input buffer and the number of batch items it holds."""
    input: np.ndarray
    batch_size: int = 1


def split_bindings(bindings: Sequence[BindingSpec]) -> Tuple[BindingSpec, BindingSpec]:
    """Find the input and output binding by role.

    :param bindings: Every binding of an engine, in engine order
    :return:         tuple: ``(input_binding, output_binding)``
    :raises BindingMismatchError: unless there is exactly one input and one output
    """
    inputs = [b for b in bindings if b.is_input]
    outputs = [b for b in bindings if not b.is_input]
    if len(bindings) != EXPECTED_BINDINGS or len(inputs) != 1 or len(outputs) != 1:
        raise BindingMismatchError(
            'Engine must have {} bindings (1 input, 1 output), found {} '
            '({} inputs, {} outputs): {}'.format(
                EXPECTED_BINDINGS, len(bindings), len(inputs), len(outputs),
                ', '.join(b.name for b in bindings)))
    for binding in bindings:
        if not binding.shape:
            raise BindingMismatchError('Binding {} has no batch dimension'.format(binding.name))
        if any(dim < 0 for dim in binding.shape[1:]):
            raise BindingMismatchError(
                'Binding {} has a dynamic non-batch dimension: {}'.format(
                    binding.name, tuple(binding.shape)))
    return inputs[0], outputs[0]


def check_batch_size(batch_size: int, max_batch_size: int, input_binding: BindingSpec) -> None:
    """Reject batch sizes the engine cannot run.

    Engines with a static batch dimension only run their compiled batch size.
    """
    if not 1 <= batch_size <= max_batch_size:
        raise InputSizeError('Batch size {} outside the compiled range 1..{}'.format(
            batch_size, max_batch_size))
    if not input_binding.dynamic_batch and batch_size != input_binding.shape[0]:
        raise InputSizeError('Engine was compiled for a fixed batch of {}, got {}'.format(
            input_binding.shape[0], batch_size))


def check_host_buffer(buffer: np.ndarray, binding: BindingSpec, batch_size: int) -> None:
    """Make sure a host buffer exactly covers ``batch_size`` items of a binding."""
    if np.dtype(buffer.dtype) != np.dtype(binding.dtype):
        raise InputSizeError('Buffer for {} has dtype {}, engine expects {}'.format(
            binding.name, np.dtype(buffer.dtype).name, np.dtype(binding.dtype).name))
    expected = binding.nbytes(batch_size)
    if buffer.nbytes != expected:
        raise InputSizeError(
            'Buffer for {} holds {} bytes, expected {} ({} x {} x {})'.format(
                binding.name, buffer.nbytes, expected, batch_size,
                binding.element_count, np.dtype(binding.dtype).itemsize))
