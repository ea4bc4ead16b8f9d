from .create_instances import CreateInstances, InstanceDescriptor
from .serial import serial_log_path, stream_serial_output

__all__ = [
    "CreateInstances",
    "InstanceDescriptor",
    "serial_log_path",
    "stream_serial_output",
]
