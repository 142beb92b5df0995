"""
Distributed Logging Utilities.

Every ShardNet module logs through `logging.getLogger(__name__)`, i.e. below
the ``ShardNet``-rooted hierarchy configured here. Records are stamped with
the global rank of the emitting process so interleaved multi-process output
stays attributable, and `log_rank_0` is used for messages (such as
configuration diagnostics) that must appear exactly once per job.
"""

import logging
import os
import sys
from typing import Optional

from ..core.distributed import get_rank

_FORMAT = "[Rank %(rank)d] %(asctime)s %(levelname)s %(name)s: %(message)s"


class _RankFilter(logging.Filter):
    """Attaches the current global rank to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = get_rank()
        return True


def setup_logger(
    name: str = 'ShardNet',
    level: int = logging.INFO,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Setup logger with proper formatting for distributed training.

    Calling this more than once replaces the handlers installed by the
    previous call instead of stacking them.

    Args:
        name (str): Logger name; the package logger by default.
        level (int): Logging level.
        log_file (Optional[str]): Optional path of a per-rank log file. A
            ``{rank}`` placeholder is substituted with the global rank.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if getattr(handler, "_shardnet_handler", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(_FORMAT)
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file is not None:
        path = log_file.format(rank=get_rank())
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(logging.FileHandler(path, mode="a"))

    for handler in handlers:
        handler._shardnet_handler = True
        handler.setFormatter(formatter)
        handler.addFilter(_RankFilter())
        logger.addHandler(handler)

    return logger


def log_rank_0(message: str, level: int = logging.INFO, logger: Optional[logging.Logger] = None):
    """
    Log message only from rank 0 to avoid duplicate logs.

    Args:
        message (str): The message to log.
        level (int): Logging level.
        logger (Optional[logging.Logger]): Logger to use; the package logger
            when omitted.
    """
    if get_rank() != 0:
        return
    (logger or logging.getLogger('ShardNet')).log(level, message)
