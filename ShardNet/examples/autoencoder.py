"""
================================================================================
Partitioned Autoencoder Example
================================================================================

Trains an entrywise autoencoder (input -> relu -> sigmoid -> reconstruction
target) with every minibatch sharded across the reading ranks of a model,
then dumps sample reconstructions with `SaveImagesCallback`.

Usage:
    torchrun --nproc_per_node=4 -m ShardNet.examples.autoencoder \\
        --config ShardNet/examples/autoencoder.yaml --image_dir images

Without ``--data`` a synthetic data set of 8x8 images is generated; with
``--data x.npy`` the samples are read from a `.npy` / `.pt` file.
"""

import argparse
import os

import torch

from ..callbacks import PrintCallback, SaveImagesCallback
from ..core import Communicator, ExecutionMode, TrainingConfig, cleanup_distributed, load_config, setup_distributed
from ..io import ArrayDataReader
from ..layers import InputLayer, TargetLayer
from ..models import SequentialModel
from ..utils import setup_logger


def synthetic_images(num_samples: int, seed: int) -> torch.Tensor:
    """Blurry blobs at random positions, shaped `num_samples x 1 x 8 x 8`."""
    generator = torch.Generator().manual_seed(seed)
    grid = torch.arange(8.0)
    centers = torch.rand(num_samples, 2, generator=generator) * 8
    dy = (grid.view(1, 8, 1) - centers[:, 0].view(-1, 1, 1)) ** 2
    dx = (grid.view(1, 1, 8) - centers[:, 1].view(-1, 1, 1)) ** 2
    return torch.exp(-(dx + dy) / 4.0).unsqueeze(1)


def main():
    parser = argparse.ArgumentParser(description="ShardNet Partitioned Autoencoder")
    parser.add_argument('--config', type=str, default='ShardNet/examples/autoencoder.yaml',
                        help='Path to the YAML run configuration.')
    parser.add_argument('--data', type=str, default=None, help='Optional .npy/.pt file of samples.')
    parser.add_argument('--image_dir', type=str, default='images')
    args = parser.parse_args()

    config = TrainingConfig.from_dict(load_config(args.config))
    if int(os.environ.get('WORLD_SIZE', 1)) > 1:
        setup_distributed()
    setup_logger(level=config.log_level_value, log_file=config.log_file)

    comm = Communicator(procs_per_model=config.procs_per_model)
    if args.data:
        images = ArrayDataReader.from_file(args.data).data
        test_images = None
    else:
        images = synthetic_images(512, seed=comm.model_rank)
        test_images = synthetic_images(64, seed=1000)
    readers = {ExecutionMode.TRAINING: ArrayDataReader(images, responses=images, shuffle=True, seed=comm.model_rank)}
    if test_images is not None:
        readers[ExecutionMode.TESTING] = ArrayDataReader(test_images, responses=test_images)

    B = config.mini_batch_size
    callbacks = [PrintCallback(), SaveImagesCallback(args.image_dir, num_images=4)]
    model = SequentialModel(comm, config, callbacks=callbacks)
    inputs = model.add_layer(InputLayer(comm, B, config.num_parallel_readers, readers, shared_data_reader=True))
    model.add_activation('relu')
    model.add_activation('sigmoid')
    model.add_layer(TargetLayer(comm, B, inputs, config.num_parallel_readers, readers, True, for_regression=True))

    try:
        model.setup()
        model.train()
        if ExecutionMode.TESTING in readers:
            model.evaluate(ExecutionMode.TESTING)
    finally:
        model.teardown()
        cleanup_distributed()


if __name__ == "__main__":
    main()
