"""Detect USB printers, configure CUPS queues and advertise them over AirPrint."""

__version__ = "0.1.0"
