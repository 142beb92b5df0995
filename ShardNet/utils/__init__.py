"""
Logging and configuration-loading utilities.
"""

from .logging import setup_logger, log_rank_0
from .prototext import (
    PrototextFilenames,
    parse_prototext_filenames_from_command_line,
    read_in_prototext_files,
    verify_prototext,
    load_prototext,
)

__all__ = [
    'setup_logger',
    'log_rank_0',
    'PrototextFilenames',
    'parse_prototext_filenames_from_command_line',
    'read_in_prototext_files',
    'verify_prototext',
    'load_prototext',
]
