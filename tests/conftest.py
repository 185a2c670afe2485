#!/usr/bin/env python3
# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

import pathlib
from typing import Union

import numpy as np
import pytest

HEIGHT = 16
WIDTH = 8
SCALE = 2.0
BIAS = 1.0


def write_affine_model(path: pathlib.Path, batch: Union[int, str] = 1,
                       height: Union[int, str] = HEIGHT, width: int = WIDTH,
                       extra_output: bool = False) -> pathlib.Path:
    """Save a tiny ONNX model computing ``prob = SCALE * data + BIAS``.

    ``batch`` may be a string to give the model a dynamic batch dimension, and
    ``height`` a string to make an item dimension dynamic.
    With ``extra_output`` the model exposes a second output, ``aux``.
    """
    onnx = pytest.importorskip('onnx')
    from onnx import TensorProto, helper, numpy_helper

    dims = [batch, height, width]
    data = helper.make_tensor_value_info('data', TensorProto.FLOAT, dims)
    prob = helper.make_tensor_value_info('prob', TensorProto.FLOAT, dims)
    initializers = [numpy_helper.from_array(np.array(SCALE, dtype=np.float32), 'scale'),
                    numpy_helper.from_array(np.array(BIAS, dtype=np.float32), 'bias')]
    nodes = [helper.make_node('Mul', ['data', 'scale'], ['scaled']),
             helper.make_node('Add', ['scaled', 'bias'], ['prob'])]
    outputs = [prob]
    if extra_output:
        nodes.append(helper.make_node('Relu', ['scaled'], ['aux']))
        outputs.append(helper.make_tensor_value_info('aux', TensorProto.FLOAT, dims))

    graph = helper.make_graph(nodes, 'affine', [data], outputs, initializer=initializers)
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid('', 13)])
    model.ir_version = 8
    onnx.save(model, str(path))
    return path


@pytest.fixture
def affine_model(tmp_path):
    return write_affine_model(tmp_path / 'affine.onnx')


@pytest.fixture(scope='session')
def cuda_context():
    """Active CUDA context, or skip when no GPU is usable."""
    pytest.importorskip('tensorrt')
    cuda = pytest.importorskip('pycuda.driver')
    try:
        cuda.init()
        if cuda.Device.count() == 0:
            pytest.skip('No CUDA device available')
    except cuda.Error as e:
        pytest.skip('CUDA unavailable: {}'.format(e))
    from beamrt.deploy import trt_utils
    return trt_utils.make_cuda_context()
