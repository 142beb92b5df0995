"""Logs the objective history at epoch, validation and test boundaries."""

import logging
from typing import TYPE_CHECKING

from .base import Callback

if TYPE_CHECKING:
    from ..models.model import SequentialModel

logger = logging.getLogger(__name__)


class PrintCallback(Callback):
    """
    Logs a one-line summary on the world master every `interval` epochs.
    """

    def __init__(self, interval: int = 1):
        super().__init__(name="print")
        if interval < 1:
            raise ValueError(f"interval must be positive, got {interval}")
        self.interval = interval

    def on_epoch_end(self, model: "SequentialModel") -> None:
        if not model.comm.is_world_master() or model.epoch % self.interval != 0:
            return
        train = model.history['train']
        logger.info("Model %d epoch %d: train objective %.6f (%d steps total)",
                    model.comm.model_rank, model.epoch, train[-1], model.step)

    def on_validation_end(self, model: "SequentialModel") -> None:
        if model.comm.is_world_master():
            logger.info("Model %d epoch %d: validation objective %.6f",
                        model.comm.model_rank, model.epoch, model.history['validate'][-1])

    def on_test_end(self, model: "SequentialModel") -> None:
        if model.comm.is_world_master():
            logger.info("Model %d: test objective %.6f", model.comm.model_rank, model.history['test'][-1])
