"""
Save Images Callback

At the end of each training phase, writes the first samples of the current
minibatch as image files: the input next to the model's reconstruction of
it, which is what an autoencoder is inspected with.

Files are named ``model{m}_phase{phase}_sample{i}.{extension}`` inside
`image_dir`, so the masters of several models can share one directory. Only
the model master writes, and only from its local columns. The extension must
name a format Pillow can write; a failed write is logged and training
continues.
"""

import logging
import math
import os
from typing import TYPE_CHECKING, List

import numpy as np
import torch
from PIL import Image

from .base import Callback
from ..core.errors import ConfigurationError

if TYPE_CHECKING:
    from ..models.model import SequentialModel

logger = logging.getLogger(__name__)


def _to_image_array(column: torch.Tensor, dims: List[int]) -> np.ndarray:
    """Reshapes one sample into an ``H x W`` or ``H x W x 3`` uint8 array."""
    values = column.detach().to('cpu', torch.float32).numpy().copy()
    if len(dims) == 2:
        image = values.reshape(dims)
    elif len(dims) == 3 and dims[0] in (1, 3):
        image = values.reshape(dims).transpose(1, 2, 0)
        if dims[0] == 1:
            image = image[:, :, 0]
    else:
        side = math.isqrt(values.size)
        image = values.reshape(side, side) if side * side == values.size else values.reshape(1, -1)

    lo, hi = float(image.min()), float(image.max())
    scale = 255.0 / (hi - lo) if hi > lo else 0.0
    return ((image - lo) * scale).round().astype(np.uint8)


def _side_by_side(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    if left.ndim != right.ndim:
        left = np.stack([left] * 3, axis=-1) if left.ndim == 2 else left
        right = np.stack([right] * 3, axis=-1) if right.ndim == 2 else right
    height = max(left.shape[0], right.shape[0])
    padded = []
    for image in (left, right):
        pad = [(0, height - image.shape[0]), (0, 0)] + [(0, 0)] * (image.ndim - 2)
        padded.append(np.pad(image, pad))
    return np.concatenate(padded, axis=1)


class SaveImagesCallback(Callback):
    """
    Saves input/reconstruction image pairs at the end of every phase.
    """

    def __init__(self, image_dir: str, num_images: int = 10, extension: str = "png"):
        """
        Initializes the SaveImagesCallback.

        Args:
            image_dir (str): Directory the images are written to; created if
                missing.
            num_images (int): Samples to save per phase.
            extension (str): File extension, which selects the image format.

        Raises:
            ConfigurationError: If Pillow cannot write `extension` files.
        """
        super().__init__(name="save_images")
        self.image_dir = image_dir
        self.num_images = num_images
        self.extension = extension.lstrip('.')
        image_format = Image.registered_extensions().get(f".{self.extension.lower()}")
        if image_format not in Image.SAVE:
            raise ConfigurationError(f"Pillow cannot write {extension!r} images", source="extension")

    def on_phase_end(self, model: "SequentialModel") -> None:
        if not model.comm.is_model_master():
            return
        input_layer = model.input_layer
        output_layer = model.target_layer.prev_layer
        self.save_images(input_layer, output_layer, model.phase, model.comm.model_rank)

    def save_images(self, input_layer, output_layer, phase: int, model_index: int = 0) -> List[str]:
        """
        Writes up to `num_images` samples and returns the written paths.
        """
        inputs = input_layer.activations.local
        outputs = output_layer.activations.local
        count = min(self.num_images, inputs.shape[1], outputs.shape[1])
        input_dims = input_layer.neuron_dims or [input_layer.num_neurons]
        output_dims = output_layer.neuron_dims or [output_layer.num_neurons]

        written = []
        try:
            os.makedirs(self.image_dir, exist_ok=True)
            for i in range(count):
                image = _side_by_side(
                    _to_image_array(inputs[:, i], input_dims),
                    _to_image_array(outputs[:, i], output_dims),
                )
                path = os.path.join(self.image_dir, f"model{model_index}_phase{phase}_sample{i}.{self.extension}")
                Image.fromarray(image).save(path)
                written.append(path)
        except (OSError, ValueError, KeyError) as e:
            logger.warning("%s: could not save images to %s: %s", self.get_name(), self.image_dir, e)
        else:
            logger.info("Saved %d images for phase %d to %s", len(written), phase, self.image_dir)
        return written
