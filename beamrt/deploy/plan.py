#!/usr/bin/env python3

# Copyright (C) 2022 Deepwave Digital, Inc - All Rights Reserved
# You may use, distribute and modify this code under the terms of the DEEPWAVE DIGITAL SOFTWARE
# SOURCE CODE TERMS OF USE, which is provided with the code. If a copy of the license was not
# received, please write to support@deepwavedigital.com

"""
Framing for serialized engines.

A TensorRT plan is only valid for the TensorRT version (and hardware) that
built it. Plans are therefore wrapped with a small header recording the
TensorRT version, so that loading a stale ``.plan`` file fails with a clear
:class:`~beamrt.errors.DeserializeError` instead of undefined behavior::

    b'BEAMRT01' | header length (uint32, big endian) | JSON header | plan
"""

import json
import os
import struct
from typing import Any, Dict, Tuple, Union

from beamrt.errors import DeserializeError, HostIOError

MAGIC = b'BEAMRT01'
_LEN = struct.Struct('>I')


def pack_blob(plan: bytes, tensorrt_version: str) -> bytes:
    """Prefix a raw plan with the magic and compatibility header."""
    header = json.dumps({'tensorrt': tensorrt_version}, sort_keys=True).encode('utf-8')
    return MAGIC + _LEN.pack(len(header)) + header + bytes(plan)


def unpack_blob(blob: bytes, tensorrt_version: str) -> Tuple[Dict[str, Any], bytes]:
    """Split a blob into its header and plan, checking compatibility.

    :param blob:             Bytes produced by :func:`pack_blob`
    :param tensorrt_version: Version of the TensorRT that will load the plan
    :return:                 tuple: ``(header, plan)``
    :raises DeserializeError: for a malformed blob or a version mismatch
    """
    blob = bytes(blob)
    prefix = len(MAGIC) + _LEN.size
    if len(blob) < prefix or not blob.startswith(MAGIC):
        raise DeserializeError('Not an engine blob (bad magic)')
    (header_len,) = _LEN.unpack_from(blob, len(MAGIC))
    if prefix + header_len > len(blob):
        raise DeserializeError('Truncated engine blob header')
    try:
        header = json.loads(blob[prefix:prefix + header_len].decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise DeserializeError('Corrupt engine blob header: {}'.format(e)) from e
    if not isinstance(header, dict):
        raise DeserializeError('Corrupt engine blob header')
    built_with = header.get('tensorrt')
    if built_with != tensorrt_version:
        raise DeserializeError('Engine was built with TensorRT {}, running {}; '
                               'rebuild the plan on this platform'.format(
                                   built_with, tensorrt_version))
    plan = blob[prefix + header_len:]
    if not plan:
        raise DeserializeError('Engine blob contains no plan')
    return header, plan


def save_blob(blob: bytes, path: Union[str, os.PathLike]) -> None:
    try:
        with open(path, 'wb') as file:
            file.write(blob)
    except OSError as e:
        raise HostIOError('Unable to write plan file {}: {}'.format(path, e)) from e


def load_blob(path: Union[str, os.PathLike]) -> bytes:
    try:
        with open(path, 'rb') as file:
            return file.read()
    except OSError as e:
        raise HostIOError('Unable to read plan file {}: {}'.format(path, e)) from e
