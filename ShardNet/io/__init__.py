"""
Data readers and minibatch distribution.
"""

from .data_reader import DataReader, ArrayDataReader
from .io_buffer import PartitionedIOBuffer, FetchDataFunctor, UpdateDataReaderFunctor

__all__ = [
    'DataReader',
    'ArrayDataReader',
    'PartitionedIOBuffer',
    'FetchDataFunctor',
    'UpdateDataReaderFunctor',
]
