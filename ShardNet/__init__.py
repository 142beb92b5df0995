"""
ShardNet - Partitioned Minibatch Training Components

Building blocks of a data-parallel training stack:
- Layers with CPU and multi-device execution paths
- Partitioned I/O buffers that shard each minibatch across reader ranks
- Input / target layers, a sequential model and its training loop
- Lifecycle callbacks (e.g. saving sample images)
- Prototext configuration loading and verification

Version: 0.1.0
"""

__version__ = "0.1.0"
__author__ = "ShardNet Team"

# Core imports
from .core import (
    Communicator,
    DeviceManager,
    DistMatrix,
    ExecutionMode,
    TrainingConfig,
    load_config,
    setup_distributed,
    cleanup_distributed,
    ConfigurationError,
    UnsupportedOperationError,
    ResourceError,
)

# Layers and data distribution
from .io import ArrayDataReader, DataReader, PartitionedIOBuffer
from .layers import ActivationLayer, InputLayer, TargetLayer, LayerChain, get_activation
from .models import SequentialModel
from .callbacks import Callback, PrintCallback, SaveImagesCallback
from .utils import setup_logger, load_prototext

__all__ = [
    # Core
    'Communicator',
    'DeviceManager',
    'DistMatrix',
    'ExecutionMode',
    'TrainingConfig',
    'load_config',
    'setup_distributed',
    'cleanup_distributed',
    'ConfigurationError',
    'UnsupportedOperationError',
    'ResourceError',

    # Data and layers
    'ArrayDataReader',
    'DataReader',
    'PartitionedIOBuffer',
    'ActivationLayer',
    'InputLayer',
    'TargetLayer',
    'LayerChain',
    'get_activation',
    'SequentialModel',

    # Callbacks and configuration
    'Callback',
    'PrintCallback',
    'SaveImagesCallback',
    'setup_logger',
    'load_prototext',
]
