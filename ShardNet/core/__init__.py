"""
Core utilities for ShardNet.

This module contains fundamental abstractions for:
- Distributed backend initialization and rank bookkeeping
- Column-distributed matrices and minibatch partitioning
- Device (GPU) management
- Run configuration and error types
"""

from .distributed import setup_distributed, cleanup_distributed, get_rank, get_world_size, is_main_process
from .comm import Communicator
from .config import TrainingConfig, load_config
from .device import DeviceManager, DeviceBuffers, TensorDescriptor, ActivationDescriptor, mini_batch_size_per_gpu
from .errors import (
    ShardNetError,
    ConfigurationError,
    PrototextParseError,
    UnsupportedOperationError,
    ResourceError,
)
from .matrix import DistMatrix
from .partition import partition_minibatch, local_partition
from .types import ExecutionMode, DataLayout

__all__ = [
    'setup_distributed',
    'cleanup_distributed',
    'get_rank',
    'get_world_size',
    'is_main_process',
    'Communicator',
    'TrainingConfig',
    'load_config',
    'DeviceManager',
    'DeviceBuffers',
    'TensorDescriptor',
    'ActivationDescriptor',
    'mini_batch_size_per_gpu',
    'ShardNetError',
    'ConfigurationError',
    'PrototextParseError',
    'UnsupportedOperationError',
    'ResourceError',
    'DistMatrix',
    'partition_minibatch',
    'local_partition',
    'ExecutionMode',
    'DataLayout',
]
