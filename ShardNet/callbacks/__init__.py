"""
Callbacks invoked at training lifecycle hooks.
"""

from .base import Callback
from .print_callback import PrintCallback
from .save_images import SaveImagesCallback

__all__ = [
    'Callback',
    'PrintCallback',
    'SaveImagesCallback',
]
