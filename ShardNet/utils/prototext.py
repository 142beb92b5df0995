"""
Prototext Configuration Loader

Loads the model, data reader, data set metadata and optimizer documents named
on the command line, one merged `TrainerPB` per model to train.

===============================================================================
COMMAND LINE:
===============================================================================

.. code-block:: text

    --model=model.prototext --reader=reader.prototext --optimizer=adam.prototext

    # several models; a single reader / optimizer is used by all of them
    --model={m1.prototext,m2.prototext} --reader=reader.prototext
        --optimizer={sgd.prototext,adam.prototext}

Multi-valued reader, metadata and optimizer lists must have one entry per
model. Every rank runs the same checks and raises the same error; only the
master logs the diagnostic, so a failed multi-process launch reports once.

===============================================================================
"""

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence

from google.protobuf import text_format

from ..core.errors import ConfigurationError, PrototextParseError
from ..proto.schema import TrainerPB

logger = logging.getLogger(__name__)

_FLAGS = ('model', 'reader', 'data_set_metadata', 'optimizer')


@dataclass(frozen=True)
class PrototextFilenames:
    """File names of the documents making up one model's configuration."""
    model: str
    reader: Optional[str] = None
    data_set_metadata: Optional[str] = None
    optimizer: Optional[str] = None

    def paths(self) -> List[str]:
        return [p for p in (self.model, self.reader, self.data_set_metadata, self.optimizer) if p]


def _fail(master: bool, error: ConfigurationError) -> None:
    if master:
        logger.error("%s", error)
    raise error


def _split_filenames(value: Optional[str], flag: str) -> List[str]:
    """Splits ``{a,b,c}`` into its entries; a plain value is a single entry."""
    if value is None:
        return []
    value = value.strip()
    if value.startswith('{') or value.endswith('}'):
        if not (value.startswith('{') and value.endswith('}')):
            raise ConfigurationError(f"unbalanced braces in {value!r}", source=f"--{flag}")
        names = [name.strip() for name in value[1:-1].split(',')]
        if not names or any(not name for name in names):
            raise ConfigurationError(f"empty file name in {value!r}", source=f"--{flag}")
        return names
    if not value:
        raise ConfigurationError("empty file name", source=f"--{flag}")
    return [value]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
    for flag in _FLAGS:
        parser.add_argument(f"--{flag}", default=None)
    return parser


def parse_prototext_filenames_from_command_line(
    master: bool, argv: Optional[Sequence[str]] = None
) -> List[PrototextFilenames]:
    """
    Parses ``--model``, ``--reader``, ``--data_set_metadata`` and
    ``--optimizer``; other arguments are ignored.

    Args:
        master (bool): Whether this process reports diagnostics.
        argv (Optional[Sequence[str]]): Arguments without the program name;
            `sys.argv[1:]` when omitted.

    Returns:
        List[PrototextFilenames]: One entry per model.

    Raises:
        ConfigurationError: If ``--model`` is missing, a list is malformed, or
            a multi-valued list does not have one entry per model.
    """
    args, _ = _build_parser().parse_known_args(sys.argv[1:] if argv is None else list(argv))
    try:
        values = {flag: _split_filenames(getattr(args, flag), flag) for flag in _FLAGS}
    except ConfigurationError as e:
        _fail(master, e)

    models = values['model']
    if not models:
        _fail(master, ConfigurationError("no model prototext given", source="--model"))

    columns = {}
    for flag in _FLAGS[1:]:
        names = values[flag]
        if len(names) <= 1:
            columns[flag] = (names or [None]) * len(models)
        elif len(names) == len(models):
            columns[flag] = names
        else:
            _fail(master, ConfigurationError(
                f"{len(names)} files given for {len(models)} models", source=f"--{flag}"
            ))

    return [
        PrototextFilenames(model, columns['reader'][i], columns['data_set_metadata'][i], columns['optimizer'][i])
        for i, model in enumerate(models)
    ]


def read_in_prototext_files(master: bool, names: Sequence[PrototextFilenames]) -> List[TrainerPB]:
    """
    Parses and merges the documents of every model.

    Raises:
        PrototextParseError: If a file cannot be read or parsed; the error's
            `source` names the file.
    """
    documents = []
    for triple in names:
        pb = TrainerPB()
        for path in triple.paths():
            try:
                with open(path, 'r') as f:
                    text_format.Merge(f.read(), pb)
            except OSError as e:
                _fail(master, PrototextParseError(f"cannot read file: {e.strerror}", source=path))
            except text_format.ParseError as e:
                _fail(master, PrototextParseError(f"parse error: {e}", source=path))
            if master:
                logger.debug("Read prototext file %s", path)
        documents.append(pb)
    return documents


def verify_prototext(master: bool, models: Sequence[TrainerPB]) -> None:
    """
    Checks that every document has at least one data reader and an optimizer.

    All problems are collected first and reported together by the master.

    Raises:
        ConfigurationError: If any document is incomplete.
    """
    problems = []
    for i, pb in enumerate(models):
        name = pb.model.name or f"model {i}"
        if not pb.HasField('data_reader') or len(pb.data_reader.reader) == 0:
            problems.append(f"{name}: no data reader")
        if not pb.HasField('optimizer'):
            problems.append(f"{name}: no optimizer")
    if not models:
        problems.append("no model documents")
    if problems:
        _fail(master, ConfigurationError("invalid prototext: " + "; ".join(problems)))


def load_prototext(master: bool, argv: Optional[Sequence[str]] = None) -> List[TrainerPB]:
    """
    Parses the command line, reads the named files and verifies them.

    Returns:
        List[TrainerPB]: One validated document per model.
    """
    names = parse_prototext_filenames_from_command_line(master, argv)
    models = read_in_prototext_files(master, names)
    verify_prototext(master, models)
    if master:
        logger.info("Loaded %d model configuration(s)", len(models))
    return models
