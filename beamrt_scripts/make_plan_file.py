#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

import os
import pathlib
from typing import Optional, Union

_script_dir = pathlib.Path(__file__).parent.absolute()
_beamrt_root = _script_dir.parent

try:
    from beamrt.deploy.config import ModelDescriptor, TrtConfig
    from beamrt.deploy.trt import EngineCache, ModelCompiler
except ModuleNotFoundError as e:
    import sys
    _msg = "{0}\nPlease run:\n  pip install -e {1}".format(e, _beamrt_root)
    raise ModuleNotFoundError(_msg).with_traceback(sys.exc_info()[2]) from None


def convert(onnx_file: Union[str, os.PathLike],
            max_batch_size: int = 1,
            config: Optional[TrtConfig] = None) -> pathlib.Path:
    """ Converts an onnx file to an optimized plan file using TensorRT.

    The plan file has a ``.plan`` extension and is saved in the same folder as
    the ONNX model, replacing any existing plan. It can be loaded again with
    :py:meth:`beamrt.deploy.trt.EngineCache.load` on the same platform.

    :param onnx_file:      Trained neural network saved as an onnx file
    :param max_batch_size: Largest batch size the plan must support
    :param config:         TensorRT settings, verbose by default
    :return:               Name of saved .plan file
    """
    onnx_file = pathlib.Path(onnx_file)  # Convert from string if necessary
    config = config if config is not None else TrtConfig(verbose=True)
    plan_file = onnx_file.with_suffix('.plan')

    with ModelCompiler(config).compile(ModelDescriptor(onnx_file, max_batch_size, ())) as engine, \
            EngineCache(config) as cache:
        cache.save(cache.serialize(engine), plan_file)

    if config.verbose:
        print('PLAN File Name : {}'.format(plan_file))
        print('PLAN File Size : {}\n'.format(os.path.getsize(plan_file)))
    return plan_file


if __name__ == '__main__':
    _onnx_file = _beamrt_root / "data" / "beamformer" / "beamformer_v7.onnx"
    convert(_onnx_file)
