#!/usr/bin/env python3
# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

import sys
import types

import numpy as np
import pytest

if __name__ == "__main__":
    rc = pytest.main([__file__, "-ra"])
    sys.exit(rc)

try:
    import pycuda.driver as cuda
    import tensorrt
    from beamrt.deploy import infer as infer_module
    from beamrt.deploy import trt as trt_module
    from beamrt.deploy import trt_utils
    from beamrt.deploy.bindings import InferenceRequest
    from beamrt.deploy.config import ModelDescriptor, TrtConfig
    from beamrt.deploy.infer import ExecutionContext
    from beamrt.deploy.trt import EngineCache, ModelCompiler
    from beamrt.deploy.trt_utils import DeviceBuffer
except ImportError:
    pytest.skip("TensorRT or PyCUDA not available, skipping related tests",
                allow_module_level=True)

from beamrt.errors import (AllocationError, BindingMismatchError, BuildError, DeserializeError,
                           DeviceError, ExecutionError, InputSizeError, NotFoundError,
                           ParseError)
from conftest import BIAS, HEIGHT, SCALE, WIDTH, write_affine_model

ITEM = HEIGHT * WIDTH


@pytest.fixture
def config():
    return TrtConfig(workspace_size=1 << 26)


@pytest.fixture
def engine(cuda_context, config, affine_model):
    blob = EngineCache.serialize(ModelCompiler(config).compile(ModelDescriptor(affine_model)))
    with EngineCache(config) as cache, cache.deserialize(blob) as deserialized:
        yield deserialized


def test_missing_model_fails_before_any_builder(monkeypatch, tmp_path, config):
    def _no_builder(*args, **kwargs):
        raise AssertionError('Builder created for a missing model')
    monkeypatch.setattr(trt_module.trt, 'Builder', _no_builder)

    descriptor = ModelDescriptor('beamformer.onnx', 1, (tmp_path / 'a', tmp_path / 'b'))
    with pytest.raises(NotFoundError):
        ModelCompiler(config).compile(descriptor)


def test_unparseable_model(cuda_context, tmp_path, config):
    model = tmp_path / 'broken.onnx'
    model.write_bytes(b'this is not a protobuf')
    with pytest.raises(ParseError):
        ModelCompiler(config).compile(ModelDescriptor(model))


def test_compile_metadata_is_deterministic(cuda_context, config, affine_model):
    compiler = ModelCompiler(config)
    with compiler.compile(ModelDescriptor(affine_model)) as first, \
            compiler.compile(ModelDescriptor(affine_model)) as second:
        assert first.bindings == second.bindings
        assert first.max_batch_size == second.max_batch_size == 1
        roles = [(b.name, b.is_input) for b in first.bindings]
        assert sorted(roles) == [('data', True), ('prob', False)]
        for binding in first.bindings:
            assert binding.shape == (1, HEIGHT, WIDTH)
            assert binding.dtype == np.float32


def test_round_trip_keeps_bindings(cuda_context, config, affine_model):
    with ModelCompiler(config).compile(ModelDescriptor(affine_model)) as compiled, \
            EngineCache(config) as cache:
        blob = cache.serialize(compiled)
        with cache.deserialize(blob) as loaded:
            assert loaded.bindings == compiled.bindings
            # One runtime may deserialize many blobs
            with cache.deserialize(blob) as again:
                assert again.bindings == compiled.bindings


def test_serialize_requires_engine(cuda_context, config, affine_model):
    with pytest.raises(ValueError):
        EngineCache.serialize(None)
    compiled = ModelCompiler(config).compile(ModelDescriptor(affine_model))
    compiled.release()
    with pytest.raises(ValueError):
        EngineCache.serialize(compiled)


def test_save_and_load_plan(cuda_context, config, affine_model, tmp_path):
    plan_file = tmp_path / 'affine.plan'
    with ModelCompiler(config).compile(ModelDescriptor(affine_model)) as compiled, \
            EngineCache(config) as cache:
        cache.save(cache.serialize(compiled), plan_file)
        with cache.deserialize(cache.load(plan_file)) as loaded:
            assert loaded.bindings == compiled.bindings


def test_corrupt_blob(cuda_context, config, affine_model):
    with ModelCompiler(config).compile(ModelDescriptor(affine_model)) as compiled:
        blob = EngineCache.serialize(compiled)
    with EngineCache(config) as cache:
        with pytest.raises(DeserializeError):
            cache.deserialize(blob[:20])
        with pytest.raises(DeserializeError):
            cache.deserialize(blob.replace(tensorrt.__version__.encode(), b'0.0.0', 1))
        with pytest.raises(DeserializeError):
            cache.deserialize(blob[:len(blob) // 2])


def test_extra_binding_rejected_at_deserialize(cuda_context, config, tmp_path):
    model = write_affine_model(tmp_path / 'two_outputs.onnx', extra_output=True)
    with ModelCompiler(config).compile(ModelDescriptor(model)) as compiled:
        assert len(compiled.bindings) == 3
        blob = EngineCache.serialize(compiled)
    with EngineCache(config) as cache:
        with pytest.raises(BindingMismatchError):
            cache.deserialize(blob)


def test_zero_input_gives_finite_repeatable_output(engine, config):
    with ExecutionContext.create(engine, config) as context:
        request = InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1)
        first = context.infer(request)
        assert first.shape == (ITEM,)
        assert np.all(np.isfinite(first))
        np.testing.assert_allclose(first, BIAS)
        second = context.infer(request)
        np.testing.assert_array_equal(first, second)


def test_infer_into_caller_buffer(engine, config):
    data = np.arange(ITEM, dtype=np.float32).reshape(1, HEIGHT, WIDTH)
    output = np.empty(ITEM, dtype=np.float32)
    with ExecutionContext.create(engine, config) as context:
        result = context.infer(InferenceRequest(data, 1), output)
    assert result is output
    np.testing.assert_allclose(output, SCALE * data.ravel() + BIAS, rtol=1e-6)


def test_dynamic_batch(cuda_context, config, tmp_path):
    model = write_affine_model(tmp_path / 'dynamic.onnx', batch='N')
    blob = EngineCache.serialize(ModelCompiler(config).compile(ModelDescriptor(model, 4)))
    with EngineCache(config) as cache, cache.deserialize(blob) as engine, \
            ExecutionContext.create(engine, config) as context:
        assert engine.max_batch_size == 4
        assert context.input_binding.dynamic_batch
        result = context.infer(InferenceRequest(np.ones(3 * ITEM, dtype=np.float32), 3))
        assert result.shape == (3 * ITEM,)
        np.testing.assert_allclose(result, SCALE + BIAS)
        with pytest.raises(InputSizeError):
            context.infer(InferenceRequest(np.ones(5 * ITEM, dtype=np.float32), 5))


def test_bad_input_rejected_before_allocation(engine, config, monkeypatch):
    def _no_alloc(nbytes):
        raise AssertionError('Device memory allocated for an invalid request')
    monkeypatch.setattr(infer_module, 'DeviceBuffer', _no_alloc)

    with ExecutionContext.create(engine, config) as context:
        with pytest.raises(InputSizeError):
            context.infer(InferenceRequest(np.zeros(ITEM - 1, dtype=np.float32), 1))
        with pytest.raises(InputSizeError):
            context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float64), 1))
        with pytest.raises(InputSizeError):
            context.infer(InferenceRequest(np.zeros(2 * ITEM, dtype=np.float32), 2))


def test_partial_allocation_is_rolled_back(engine, config, monkeypatch):
    allocated = []

    class _FailSecond(DeviceBuffer):
        def __init__(self, nbytes):
            if allocated:
                raise AllocationError('out of device memory')
            super().__init__(nbytes)
            allocated.append(self)
    monkeypatch.setattr(infer_module, 'DeviceBuffer', _FailSecond)

    with ExecutionContext.create(engine, config) as context:
        with pytest.raises(AllocationError):
            context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))
    assert len(allocated) == 1
    assert allocated[0].allocation is None


def test_context_is_single_flight(engine, config):
    with ExecutionContext.create(engine, config) as context:
        context._busy.acquire()
        try:
            with pytest.raises(ExecutionError, match='already running'):
                context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))
        finally:
            context._busy.release()


def test_released_context_refuses_inference(engine, config):
    context = ExecutionContext.create(engine, config)
    context.release()
    with pytest.raises(ExecutionError):
        context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))


def test_plan_bench(engine, config, capsys):
    with ExecutionContext.create(engine, config) as context:
        throughput = infer_module.plan_bench(context, num_inferences=5, seed=0)
    assert throughput > 0
    assert 'Throughput' in capsys.readouterr().out


class _FakeBuilderConfig:
    def __init__(self):
        self.flags = set()
        self.default_device_type = None
        self.DLA_core = -1

    def set_memory_pool_limit(self, pool, size):
        self.workspace = size

    def set_flag(self, flag):
        self.flags.add(flag)

    def get_flag(self, flag):
        return flag in self.flags


class _FakeBuilder:
    num_DLA_cores = 2

    def create_builder_config(self):
        return _FakeBuilderConfig()


class _FakeNetwork:
    num_inputs = 1

    def get_input(self, index):
        return types.SimpleNamespace(name='data', shape=(1, HEIGHT, WIDTH))


def test_dla_build_enables_fp16():
    compiler = ModelCompiler(TrtConfig(accelerator_core=1, fp16=False))
    build_config = compiler._make_build_config(_FakeBuilder(), _FakeNetwork(), 1)
    assert build_config.default_device_type == tensorrt.DeviceType.DLA
    assert build_config.DLA_core == 1
    assert tensorrt.BuilderFlag.GPU_FALLBACK in build_config.flags
    assert tensorrt.BuilderFlag.FP16 in build_config.flags


def test_gpu_build_keeps_fp32():
    build_config = ModelCompiler(TrtConfig())._make_build_config(_FakeBuilder(), _FakeNetwork(), 1)
    assert tensorrt.BuilderFlag.FP16 not in build_config.flags
    assert build_config.default_device_type is None


def test_unavailable_dla_core_is_build_error():
    compiler = ModelCompiler(TrtConfig(accelerator_core=2))
    with pytest.raises(BuildError, match='DLA core 2'):
        compiler._make_build_config(_FakeBuilder(), _FakeNetwork(), 1)


def test_zero_max_batch_is_build_error(monkeypatch, config, affine_model):
    def _no_builder(*args, **kwargs):
        raise AssertionError('Builder created for an invalid batch size')
    monkeypatch.setattr(trt_module.trt, 'Builder', _no_builder)
    with pytest.raises(BuildError, match='max_batch_size'):
        ModelCompiler(config).compile(ModelDescriptor(affine_model, 0))


def test_dynamic_item_dimension_is_build_error(cuda_context, config, tmp_path):
    model = write_affine_model(tmp_path / 'dynamic_height.onnx', height='H')
    with pytest.raises(BuildError, match='only the batch'):
        ModelCompiler(config).compile(ModelDescriptor(model))


def test_context_rejects_extra_binding(cuda_context, config, tmp_path):
    model = write_affine_model(tmp_path / 'two_outputs.onnx', extra_output=True)
    with ModelCompiler(config).compile(ModelDescriptor(model)) as compiled:
        with pytest.raises(BindingMismatchError):
            ExecutionContext.create(compiled, config)


class _Launch:
    """Execution context stand-in whose launch is accepted or rejected without running."""

    def __init__(self, context, accepted):
        self._context = context
        self._accepted = accepted

    def __getattr__(self, name):
        return getattr(self._context, name)

    def execute_async_v3(self, stream_handle):
        return self._accepted


class _FailingStream:
    handle = 0

    def synchronize(self):
        raise cuda.Error('unspecified launch failure')


def test_rejected_launch_frees_buffers(engine, config, monkeypatch):
    allocated = []

    class _Recording(DeviceBuffer):
        def __init__(self, nbytes):
            super().__init__(nbytes)
            allocated.append(self)
    monkeypatch.setattr(infer_module, 'DeviceBuffer', _Recording)

    with ExecutionContext.create(engine, config) as context:
        context._context = _Launch(context._context, accepted=False)
        with pytest.raises(ExecutionError, match='rejected'):
            context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))
    assert len(allocated) == 2
    assert all(buffer.allocation is None for buffer in allocated)


def _skip_copies(monkeypatch):
    def _no_copy(*args):
        pass
    monkeypatch.setattr(infer_module, 'cuda', types.SimpleNamespace(
        Error=cuda.Error, memcpy_htod_async=_no_copy, memcpy_dtoh_async=_no_copy))


def test_stream_drain_failure_is_execution_error(engine, config, monkeypatch):
    _skip_copies(monkeypatch)
    with ExecutionContext.create(engine, config) as context:
        context._context = _Launch(context._context, accepted=True)
        context._stream = _FailingStream()
        with pytest.raises(ExecutionError, match='draining') as info:
            context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))
    assert isinstance(info.value.__cause__, cuda.Error)


def test_stream_drain_failure_keeps_launch_error(engine, config, monkeypatch):
    _skip_copies(monkeypatch)
    with ExecutionContext.create(engine, config) as context:
        context._context = _Launch(context._context, accepted=False)
        context._stream = _FailingStream()
        with pytest.raises(ExecutionError, match='rejected') as info:
            context.infer(InferenceRequest(np.zeros(ITEM, dtype=np.float32), 1))
    assert isinstance(info.value.__context__, ExecutionError)


def test_cuda_setup_failure_is_device_error(monkeypatch):
    def _init():
        raise cuda.Error('no CUDA-capable device is detected')
    monkeypatch.setattr(trt_utils, 'cuda', types.SimpleNamespace(Error=cuda.Error, init=_init))
    with pytest.raises(DeviceError) as info:
        trt_utils.make_cuda_context()
    assert info.value.stage == 'setup'
