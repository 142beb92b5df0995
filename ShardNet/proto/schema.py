"""
Trainer Document Schema

The prototext documents describing a run are instances of `TrainerPB`:

.. code-block:: text

    model { name: "autoencoder" mini_batch_size: 64 num_epochs: 10
            layer { name: "relu1" type: "relu" }
            callback { name: "save_images" image_dir: "images" } }
    data_reader { reader { name: "mnist" role: "train" data_filedir: "/data" } }
    optimizer { name: "adam" learn_rate: 0.001 }
    data_set_metadata { name: "mnist" sample_dims: [1, 28, 28] num_labels: 10 }

Each of the model, reader, optimizer and metadata sections normally lives in
its own file; the loader merges them into one document. The messages are
built from a `FileDescriptorProto` at import time so no generated code has to
be kept in sync with the protobuf runtime.
"""

from typing import Optional

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_FD = descriptor_pb2.FieldDescriptorProto
_PACKAGE = "shardnet"

_STRING = _FD.TYPE_STRING
_INT = _FD.TYPE_INT32
_DOUBLE = _FD.TYPE_DOUBLE
_BOOL = _FD.TYPE_BOOL
_MESSAGE = _FD.TYPE_MESSAGE


def _message(file_proto, name, *fields):
    message = file_proto.message_type.add(name=name)
    for number, (field_name, field_type, extra) in enumerate(fields, start=1):
        field = message.field.add(name=field_name, number=number, type=field_type)
        field.label = _FD.LABEL_REPEATED if extra.get('repeated') else _FD.LABEL_OPTIONAL
        if field_type == _MESSAGE:
            field.type_name = f".{_PACKAGE}.{extra['message']}"
    return message


def _f(name: str, field_type: int, message: Optional[str] = None, repeated: bool = False):
    return name, field_type, {'message': message, 'repeated': repeated}


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="shardnet/trainer.proto", package=_PACKAGE, syntax="proto2"
    )
    _message(file_proto, "Layer",
             _f("name", _STRING), _f("type", _STRING), _f("activation", _STRING),
             _f("num_neurons", _INT))
    _message(file_proto, "Callback",
             _f("name", _STRING), _f("image_dir", _STRING), _f("num_images", _INT),
             _f("extension", _STRING), _f("interval", _INT))
    _message(file_proto, "Model",
             _f("name", _STRING), _f("mini_batch_size", _INT), _f("num_epochs", _INT),
             _f("num_parallel_readers", _INT), _f("procs_per_model", _INT), _f("use_cudnn", _BOOL),
             _f("num_gpus", _INT),
             _f("layer", _MESSAGE, "Layer", repeated=True),
             _f("callback", _MESSAGE, "Callback", repeated=True))
    _message(file_proto, "Reader",
             _f("name", _STRING), _f("role", _STRING), _f("shuffle", _BOOL),
             _f("data_filedir", _STRING), _f("data_filename", _STRING), _f("label_filename", _STRING),
             _f("num_labels", _INT), _f("percent_of_data_to_use", _DOUBLE),
             _f("validation_percent", _DOUBLE), _f("shared_data_reader", _BOOL))
    _message(file_proto, "DataReader", _f("reader", _MESSAGE, "Reader", repeated=True))
    _message(file_proto, "Optimizer",
             _f("name", _STRING), _f("learn_rate", _DOUBLE), _f("momentum", _DOUBLE),
             _f("decay_rate", _DOUBLE), _f("nesterov", _BOOL), _f("beta1", _DOUBLE),
             _f("beta2", _DOUBLE), _f("eps", _DOUBLE))
    _message(file_proto, "DataSetMetadata",
             _f("name", _STRING), _f("sample_dims", _INT, repeated=True), _f("num_labels", _INT))
    _message(file_proto, "TrainerPB",
             _f("model", _MESSAGE, "Model"),
             _f("data_reader", _MESSAGE, "DataReader"),
             _f("optimizer", _MESSAGE, "Optimizer"),
             _f("data_set_metadata", _MESSAGE, "DataSetMetadata"))
    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{_PACKAGE}.{name}"))


Layer = _message_class("Layer")
Callback = _message_class("Callback")
Model = _message_class("Model")
Reader = _message_class("Reader")
DataReader = _message_class("DataReader")
Optimizer = _message_class("Optimizer")
DataSetMetadata = _message_class("DataSetMetadata")
TrainerPB = _message_class("TrainerPB")
