#!/usr/bin/env python3
# Copyright 2022, Deepwave Digital, Inc.
# SPDX-License-Identifier: Commercial

# Setuptools / installation script for BeamRT

import setuptools

setuptools.setup(
    name='BeamRT',
    version='0.1.0',
    packages=['beamrt', 'beamrt.deploy', 'beamrt_scripts'],
    license='Commercial',
    python_requires='>=3.8',
    install_requires=[
        'numpy',
        'tensorrt>=10.0',
        'pycuda',
        'onnxruntime',
    ],
    extras_require={
        'test': ['pytest', 'onnx'],
    },
    entry_points={
        'console_scripts': [
            'beamrt-infer=beamrt_scripts.run_inference:main',
        ],
    },
)
