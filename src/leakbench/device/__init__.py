"""
Bench device acquisition: the ASCII line decoder, the serial link wrapper and
the connect / measure / demo state machine that feeds the sample store.
"""

from .decoder import LineDecoder
from .runner import AcquisitionMachine, DeviceState, SerialLink, device_app, list_serial_ports

__all__ = [
    "LineDecoder",
    "AcquisitionMachine",
    "DeviceState",
    "SerialLink",
    "device_app",
    "list_serial_ports",
]
