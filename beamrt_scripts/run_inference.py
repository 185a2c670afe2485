#!/usr/bin/env python3
#
# Copyright 2022, Deepwave Digital, Inc.
# SPDX-License-Identifier: BSD-3-Clause

"""
This application runs the beamforming network once, end to end: it optimizes the
ONNX model with TensorRT, loads the optimized engine, reads one input frame of
raw ``float32`` samples, runs inference and writes the beamformed output.
"""

import argparse
import os
import pathlib
import sys
from typing import Optional, Sequence, Tuple, Union

import numpy as np

_script_dir = pathlib.Path(__file__).parent.absolute()
_beamrt_root = _script_dir.parent

try:
    from beamrt import fileio
    from beamrt.deploy.bindings import InferenceRequest
    from beamrt.deploy.config import ModelDescriptor, TrtConfig
    from beamrt.deploy.infer import ExecutionContext
    from beamrt.deploy.trt import EngineCache, ModelCompiler
    from beamrt.deploy import onnx, trt_utils
    from beamrt.errors import BeamRTError, ExecutionError
except ModuleNotFoundError as e:
    _msg = "{0}\nPlease run:\n  pip install -e {1}".format(e, _beamrt_root)
    raise ModuleNotFoundError(_msg).with_traceback(sys.exc_info()[2]) from None


def _parse_command_line_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """ Parses command line input arguments for the beamformer

    :return: parsed arguments
    """
    help_formatter = argparse.ArgumentDefaultsHelpFormatter
    parser = argparse.ArgumentParser(description='Beamformer TensorRT inference.',
                                     formatter_class=help_formatter)
    parser.add_argument('--useDLACore', type=int, required=False, dest='dla_core',
                        default=-1, help='DLA core to run on. Use -1 for the GPU')
    parser.add_argument('-m', type=str, required=False, dest='model_file',
                        default='beamformer_v7.onnx', help='Trained neural network (onnx)')
    parser.add_argument('-d', type=str, action='append', required=False,
                        dest='search_dirs', default=None,
                        help='Directory to search for the model; may be repeated '
                             '(default: {})'.format(', '.join(fileio.DEFAULT_SEARCH_DIRS)))
    parser.add_argument('-i', type=str, required=False, dest='input_file',
                        default='Ireference_tran.bin', help='Raw float32 input samples')
    parser.add_argument('-o', type=str, required=False, dest='output_file',
                        default='beamformed_data.bin', help='Raw float32 output file')
    parser.add_argument('-b', type=int, required=False, dest='batch_size',
                        default=1, help='Batch size for inference')
    parser.add_argument('-w', type=int, required=False, dest='workspace_size',
                        default=1 << 30, help='TensorRT workspace size in bytes')
    parser.add_argument('--fp16', action='store_true', help='Allow float16 layers')
    parser.add_argument('--dump-input', type=str, required=False, dest='dump_input',
                        default=None, help='Write the loaded input back to this file')
    parser.add_argument('--save-plan', type=str, required=False, dest='plan_file',
                        default=None, help='Persist the serialized engine to this file')
    parser.add_argument('--check-onnx', action='store_true', dest='check_onnx',
                        help='Compare the output against onnxruntime on the CPU')
    parser.add_argument('-v', action='store_true', dest='verbose',
                        help='Print information about the engine')
    return parser.parse_args(argv)


def run(model_file: Union[str, os.PathLike],
        input_file: Union[str, os.PathLike],
        output_file: Union[str, os.PathLike],
        config: Optional[TrtConfig] = None,
        batch_size: int = 1,
        search_dirs: Sequence[Union[str, os.PathLike]] = fileio.DEFAULT_SEARCH_DIRS,
        dump_input: Optional[Union[str, os.PathLike]] = None,
        plan_file: Optional[Union[str, os.PathLike]] = None,
        check_onnx: bool = False,
        onnx_tolerance: Tuple[float, float] = (1e-3, 1e-3)) -> np.ndarray:
    """ Compile the model, load the engine and run one inference.

    A CUDA context must already be active.

    Example usage:

    .. code-block:: python

        from beamrt.deploy.trt_utils import make_cuda_context
        from beamrt_scripts.run_inference import run
        make_cuda_context()
        result = run('beamformer_v7.onnx', 'Ireference_tran.bin', 'beamformed_data.bin')

    :param model_file:     ONNX model, looked up in ``search_dirs``
    :param input_file:     Raw ``float32`` input samples for ``batch_size`` items
    :param output_file:    Where the raw ``float32`` output is written
    :param config:         TensorRT settings
    :param batch_size:     Batch size to compile for and run with
    :param search_dirs:    Ordered directories to search for the model
    :param dump_input:     If given, the loaded input is written back to this file
    :param plan_file:      If given, the serialized engine is saved to this file
    :param check_onnx:     Compare the result with an ``onnxruntime`` reference
    :param onnx_tolerance: ``(rtol, atol)`` used for the reference comparison
    :return:               The inference output
    """
    config = config if config is not None else TrtConfig()
    descriptor = ModelDescriptor(model_file, batch_size, tuple(search_dirs))

    # Create a TensorRT engine from the onnx model and serialize it
    with ModelCompiler(config).compile(descriptor) as compiled:
        model_path = fileio.locate_file(model_file, search_dirs)
        blob = EngineCache.serialize(compiled)

    with EngineCache(config) as cache:
        if plan_file is not None:
            cache.save(blob, plan_file)
        with cache.deserialize(blob) as engine, \
                ExecutionContext.create(engine, config) as context:
            count = batch_size * context.input_binding.element_count
            data = fileio.read_floats(input_file, count, context.input_binding.dtype)
            if dump_input is not None:
                fileio.write_floats(dump_input, data)

            result = context.infer(InferenceRequest(data, batch_size))

    if check_onnx:
        reference = onnx.onnx_infer(model_path, data)
        rtol, atol = onnx_tolerance
        if not np.allclose(result, reference, rtol=rtol, atol=atol):
            max_err = float(np.max(np.abs(result - reference)))
            raise ExecutionError('Engine output differs from onnxruntime '
                                 '(max abs error {:.3g})'.format(max_err))
        print('Output matches onnxruntime reference')

    # Only a checked result reaches the output file
    fileio.write_floats(output_file, result)
    return result


def main(argv: Optional[Sequence[str]] = None) -> int:
    pars = _parse_command_line_arguments(argv)
    search_dirs = pars.search_dirs or fileio.DEFAULT_SEARCH_DIRS
    try:
        config = TrtConfig(accelerator_core=pars.dla_core,
                           workspace_size=pars.workspace_size,
                           fp16=pars.fp16,
                           verbose=pars.verbose)
    except ValueError as e:
        print('Invalid arguments: {}'.format(e), file=sys.stderr)
        return 1

    try:
        trt_utils.make_cuda_context()
        run(pars.model_file, pars.input_file, pars.output_file,
            config=config,
            batch_size=pars.batch_size,
            search_dirs=search_dirs,
            dump_input=pars.dump_input,
            plan_file=pars.plan_file,
            check_onnx=pars.check_onnx)
    except BeamRTError as e:
        print('{} failed: {}'.format(e.stage, e), file=sys.stderr)
        return 1
    print('Wrote {}'.format(pars.output_file))
    return 0


if __name__ == '__main__':
    sys.exit(main())
