"""
Model assembly and the training loop.
"""

from .model import SequentialModel

__all__ = ['SequentialModel']
