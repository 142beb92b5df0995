"""
Command-line check of a run's prototext configuration.

.. code-block:: text

    shardnet-verify --model={m1.prototext,m2.prototext} --reader=reader.prototext \\
        --optimizer=adam.prototext

Under `torchrun` every rank loads and verifies the documents; only rank 0
prints the summary or the diagnostic. Exits with status 1 on any
configuration error.
"""

import logging
import os
import sys
from typing import Optional, Sequence

from .core.config import TrainingConfig
from .core.distributed import cleanup_distributed, is_main_process, setup_distributed
from .core.errors import ConfigurationError
from .utils.logging import setup_logger
from .utils.prototext import load_prototext

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    if int(os.environ.get('WORLD_SIZE', 1)) > 1:
        setup_distributed()
    setup_logger(level=logging.INFO)
    master = is_main_process()

    try:
        # load_prototext reports its own failures on the master
        models = load_prototext(master, argv)
    except ConfigurationError:
        cleanup_distributed()
        return 1
    try:
        configs = [TrainingConfig.from_prototext(pb) for pb in models]
    except ConfigurationError as e:
        if master:
            logger.error("%s", e)
        return 1
    finally:
        cleanup_distributed()

    if master:
        for pb, config in zip(models, configs):
            print(f"{pb.model.name or '<unnamed>'}: {len(pb.model.layer)} layers, "
                  f"{len(pb.data_reader.reader)} readers, optimizer {pb.optimizer.name or '<unnamed>'}, "
                  f"mini_batch_size={config.mini_batch_size}, num_epochs={config.num_epochs}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
