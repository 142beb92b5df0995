"""
Protobuf messages of the trainer configuration documents.
"""

from .schema import TrainerPB, Model, Layer, Callback, DataReader, Reader, Optimizer, DataSetMetadata

__all__ = [
    'TrainerPB',
    'Model',
    'Layer',
    'Callback',
    'DataReader',
    'Reader',
    'Optimizer',
    'DataSetMetadata',
]
