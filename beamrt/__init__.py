#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
BeamRT compiles a trained beamforming network (``.onnx``) into a TensorRT engine
and runs fixed-shape inference on it from raw host sample buffers.
"""

__version__ = '0.1.0'
