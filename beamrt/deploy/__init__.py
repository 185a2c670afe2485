#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Tools for deploying a trained beamforming network with TensorRT.

In this sense, "deploying" a neural network model means running it using a standalone inference
engine (and not from within the learning framework that was used to define and train the model).

The pipeline has three stages:

1. :class:`~beamrt.deploy.trt.ModelCompiler` optimizes an ONNX model into an engine.
2. :class:`~beamrt.deploy.trt.EngineCache` turns the engine into a portable blob and back
   again, validating the engine's input/output bindings on the way in.
3. :class:`~beamrt.deploy.infer.ExecutionContext` runs inference on the engine, moving
   data between host and device memory on its own CUDA stream.

``onnxruntime`` is supported through :mod:`beamrt.deploy.onnx` as a CPU reference for
checking the results of an optimized engine.
"""
