#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
This module optimizes a neural network using NVIDIA's TensorRT framework and
converts optimized engines to and from portable byte blobs.

Since TensorRT optimization functions by running many variations of the network
on the target hardware, it must be executed on the platform that will be used for
inference. For the same reason a serialized engine is only valid for the TensorRT
version that produced it.

The basic workflow is as follows:

1. Compile the ONNX model with :meth:`ModelCompiler.compile`.
2. Turn the result into a blob with :meth:`EngineCache.serialize`, optionally
   persisting it with :meth:`EngineCache.save`.
3. Load the blob with :meth:`EngineCache.deserialize` and hand the resulting
   engine to :class:`beamrt.deploy.infer.ExecutionContext`.
"""

import os
import warnings
from typing import Optional, Tuple, Union

import numpy as np
import tensorrt as trt

from beamrt.deploy import plan
from beamrt.deploy.bindings import BindingSpec, split_bindings
from beamrt.deploy.config import ModelDescriptor, TrtConfig
from beamrt.errors import BindingMismatchError, BuildError, DeserializeError, ParseError
from beamrt.fileio import locate_file


def describe_bindings(engine: trt.ICudaEngine) -> Tuple[BindingSpec, ...]:
    """Read the name, role, shape and dtype of every I/O tensor of an engine."""
    specs = []
    for index in range(engine.num_io_tensors):
        name = engine.get_tensor_name(index)
        specs.append(BindingSpec(
            index=index,
            name=name,
            is_input=engine.get_tensor_mode(name) == trt.TensorIOMode.INPUT,
            shape=tuple(engine.get_tensor_shape(name)),
            dtype=np.dtype(trt.nptype(engine.get_tensor_dtype(name)))))
    return tuple(specs)


def _max_batch_size(engine: trt.ICudaEngine, bindings: Tuple[BindingSpec, ...]) -> int:
    for binding in bindings:
        if not binding.is_input or not binding.shape:
            continue
        if binding.dynamic_batch:
            # Profile shapes are (min, opt, max)
            return int(engine.get_tensor_profile_shape(binding.name, 0)[2][0])
        return int(binding.shape[0])
    return 0


class CompiledEngine:
    """An optimized engine together with the runtime that deserialized it.

    The runtime is kept alive for as long as the engine is. Call :meth:`release`
    (or use the object as a context manager) to drop both.

    :var tuple bindings:      :class:`BindingSpec` of every I/O tensor, in engine order
    :var int max_batch_size:  Largest batch the engine accepts
    """

    def __init__(self, engine: trt.ICudaEngine, runtime: trt.Runtime) -> None:
        self.engine = engine
        self._runtime = runtime
        self.bindings = describe_bindings(engine)
        self.max_batch_size = _max_batch_size(engine, self.bindings)

    @property
    def num_layers(self) -> int:
        return self.engine.num_layers

    @property
    def released(self) -> bool:
        return self.engine is None

    def release(self) -> None:
        # Engine first; it must not outlive its runtime
        self.engine = None
        self._runtime = None

    def __enter__(self) -> 'CompiledEngine':
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


def print_engine_info(engine: CompiledEngine, title: str) -> None:
    print('{}:'.format(title))
    for binding in engine.bindings:
        print('  {}'.format(binding.describe()))
    print('  Layers             : {}'.format(engine.num_layers))
    print('  Max Batch Size     : {}'.format(engine.max_batch_size))


class ModelCompiler:
    """Optimizes ONNX models into TensorRT engines.

    :param TrtConfig config: Workspace, precision, DLA core and logging settings
    """

    def __init__(self, config: Optional[TrtConfig] = None) -> None:
        self.config = config if config is not None else TrtConfig()

    def compile(self, descriptor: ModelDescriptor) -> CompiledEngine:
        """Locate, parse and optimize a model.

        :param descriptor: Model file and maximum batch size to optimize for
        :return:           The optimized engine
        :raises NotFoundError: if the model is not in any search directory
        :raises ParseError:    if the ONNX parser rejects the model
        :raises BuildError:    if TensorRT cannot build an engine
        """
        # Nothing is created before the model file is known to exist
        model_file = locate_file(descriptor.path, descriptor.search_dirs)
        if descriptor.max_batch_size < 1:
            raise BuildError('max_batch_size must be positive, got {}'.format(
                descriptor.max_batch_size))

        logger = self.config.logger
        builder = network = parser = build_config = None
        try:
            builder = trt.Builder(logger)
            network = builder.create_network(0)  # networks are always explicit batch
            parser = trt.OnnxParser(network, logger)
            if not parser.parse_from_file(str(model_file)):
                errors = [str(parser.get_error(i)) for i in range(parser.num_errors)]
                raise ParseError('Failed to parse {}: {}'.format(
                    model_file, '; '.join(errors) or 'unknown error'))

            build_config = self._make_build_config(builder, network, descriptor.max_batch_size)
            serialized = builder.build_serialized_network(network, build_config)
            if serialized is None:
                raise BuildError('Unable to create TensorRT engine from {}. Check settings '
                                 '(workspace={:,} bytes, fp16={}, DLA core={})'.format(
                                     model_file, self.config.workspace_size, self.config.fp16,
                                     self.config.accelerator_core))
        finally:
            parser = None
            build_config = None
            network = None
            builder = None

        engine = self._load(serialized)
        if self.config.verbose:
            print('\nONNX File Name  : {}'.format(model_file))
            print('ONNX File Size  : {}'.format(os.path.getsize(model_file)))
            print('Plan Size       : {}\n'.format(serialized.nbytes))
            print_engine_info(engine, 'Compiled Engine')
        return engine

    def _make_build_config(self, builder: trt.Builder, network: trt.INetworkDefinition,
                           max_batch_size: int) -> trt.IBuilderConfig:
        config = builder.create_builder_config()
        config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, self.config.workspace_size)
        if self.config.fp16:
            config.set_flag(trt.BuilderFlag.FP16)
        if self.config.uses_dla:
            if self.config.accelerator_core >= builder.num_DLA_cores:
                raise BuildError('DLA core {} requested but the platform has {}'.format(
                    self.config.accelerator_core, builder.num_DLA_cores))
            config.default_device_type = trt.DeviceType.DLA
            config.DLA_core = self.config.accelerator_core
            config.set_flag(trt.BuilderFlag.GPU_FALLBACK)
            # DLA only runs reduced precision layers
            if not config.get_flag(trt.BuilderFlag.INT8):
                config.set_flag(trt.BuilderFlag.FP16)

        profile = None
        for index in range(network.num_inputs):
            tensor = network.get_input(index)
            shape = tuple(tensor.shape)
            if any(dim < 0 for dim in shape[1:]):
                raise BuildError('Input {} has dynamic dimensions {}; only the batch '
                                 'dimension may be dynamic'.format(tensor.name, shape))
            if shape and shape[0] == -1:
                # Set the min, optimal, and max dimensions for the input layer.
                if profile is None:
                    profile = builder.create_optimization_profile()
                optimized_dims = (max_batch_size,) + shape[1:]
                profile.set_shape(tensor.name, (1,) + shape[1:], optimized_dims, optimized_dims)
            elif shape and shape[0] != max_batch_size:
                warnings.warn('Input {} has a fixed batch of {}; max_batch_size {} is '
                              'ignored'.format(tensor.name, shape[0], max_batch_size),
                              RuntimeWarning)
        if profile is not None:
            config.add_optimization_profile(profile)
        return config

    def _load(self, serialized: trt.IHostMemory) -> CompiledEngine:
        runtime = trt.Runtime(self.config.logger)
        if self.config.uses_dla:
            runtime.DLA_core = self.config.accelerator_core
        engine = runtime.deserialize_cuda_engine(serialized)
        if engine is None:
            raise BuildError('TensorRT built a plan it could not load')
        return CompiledEngine(engine, runtime)


class EngineCache:
    """Serializes engines to blobs and deserializes blobs into runnable engines.

    One cache owns one TensorRT runtime and may deserialize many blobs over its
    lifetime. Blobs are tagged with the TensorRT version that produced them.

    Selecting a DLA core sets it on the shared runtime, where it stays in effect for
    the lifetime of the cache: a later call with ``accelerator_core=-1`` does not
    reset it. Engines built for the GPU have no DLA layers and are unaffected.

    :param TrtConfig config: Logging and default DLA core settings
    """

    def __init__(self, config: Optional[TrtConfig] = None) -> None:
        self.config = config if config is not None else TrtConfig()
        self._runtime = trt.Runtime(self.config.logger)

    @staticmethod
    def serialize(engine: CompiledEngine) -> bytes:
        """Convert an engine to an engine blob."""
        if engine is None or engine.released:
            raise ValueError('No engine to serialize')
        return plan.pack_blob(engine.engine.serialize(), trt.__version__)

    def deserialize(self, blob: bytes, accelerator_core: Optional[int] = None) -> CompiledEngine:
        """Create a runnable engine from an engine blob.

        :param blob:             Bytes from :meth:`serialize` or :meth:`load`
        :param accelerator_core: DLA core to load onto, ``-1`` for the GPU; defaults
                                 to the value in the config
        :raises DeserializeError:     for a corrupt or incompatible blob
        :raises BindingMismatchError: unless the engine has one input and one output
        """
        if self._runtime is None:
            raise DeserializeError('EngineCache has been released')
        if accelerator_core is None:
            accelerator_core = self.config.accelerator_core

        _, serialized = plan.unpack_blob(blob, trt.__version__)
        if accelerator_core >= 0:
            if accelerator_core >= self._runtime.num_DLA_cores:
                raise DeserializeError('DLA core {} requested but the platform has {}'.format(
                    accelerator_core, self._runtime.num_DLA_cores))
            self._runtime.DLA_core = accelerator_core
        try:
            trt_engine = self._runtime.deserialize_cuda_engine(serialized)
        except RuntimeError as e:
            raise DeserializeError('TensorRT rejected the engine blob: {}'.format(e)) from e
        if trt_engine is None:
            raise DeserializeError('TensorRT rejected the engine blob')

        engine = CompiledEngine(trt_engine, self._runtime)
        try:
            split_bindings(engine.bindings)
        except BindingMismatchError:
            engine.release()
            raise
        if self.config.verbose:
            print_engine_info(engine, 'Bindings after deserializing')
        return engine

    def save(self, blob: bytes, path: Union[str, os.PathLike]) -> None:
        plan.save_blob(blob, path)

    def load(self, path: Union[str, os.PathLike]) -> bytes:
        return plan.load_blob(path)

    def release(self) -> None:
        self._runtime = None

    def __enter__(self) -> 'EngineCache':
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
