"""
Layers, their executors and the chain that holds them.
"""

from .base import Layer
from .activations import (
    Activation,
    ActivationLayer,
    ACTIVATIONS,
    RELU,
    SIGMOID,
    TANH,
    LEAKY_RELU,
    leaky_relu,
    get_activation,
    relu_layer,
)
from .chain import LayerChain
from .executors import BufferOwnership, Executor, CPUExecutor, GPUExecutor, select_executor
from .io import IOLayer, InputLayer, TargetLayer

__all__ = [
    'Layer',
    'Activation',
    'ActivationLayer',
    'ACTIVATIONS',
    'RELU',
    'SIGMOID',
    'TANH',
    'LEAKY_RELU',
    'leaky_relu',
    'get_activation',
    'relu_layer',
    'LayerChain',
    'BufferOwnership',
    'Executor',
    'CPUExecutor',
    'GPUExecutor',
    'select_executor',
    'IOLayer',
    'InputLayer',
    'TargetLayer',
]
