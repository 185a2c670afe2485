#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Exceptions raised by the compile, deserialize and inference stages.

Every exception carries a :attr:`BeamRTError.stage` so that the driver can
report which part of the pipeline failed.
"""


class BeamRTError(Exception):
    """Base class for all pipeline failures."""

    stage = 'pipeline'


class NotFoundError(BeamRTError, FileNotFoundError):
    """The model file is absent from every search directory."""

    stage = 'compile'


class ParseError(BeamRTError):
    """The ONNX parser rejected the model file."""

    stage = 'compile'


class BuildError(BeamRTError):
    """TensorRT could not build an engine for the requested settings."""

    stage = 'compile'


class DeserializeError(BeamRTError):
    """An engine blob is corrupt or was made by an incompatible TensorRT."""

    stage = 'deserialize'


class BindingMismatchError(BeamRTError):
    """The engine does not expose exactly one input and one output binding."""

    stage = 'deserialize'


class InputSizeError(BeamRTError, ValueError):
    """A host buffer does not match the compiled binding size or dtype."""

    stage = 'infer'


class AllocationError(BeamRTError):
    """Device memory could not be reserved."""

    stage = 'infer'


class ExecutionError(BeamRTError):
    """The engine launch was rejected by the runtime."""

    stage = 'infer'


class HostIOError(BeamRTError, OSError):
    """Reading or writing a host file failed."""

    stage = 'io'


class DeviceError(BeamRTError):
    """The CUDA device or context could not be set up."""

    stage = 'setup'
