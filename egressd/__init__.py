"""Egress service core: admission control, handler processes, metrics and pipeline messages."""

__version__ = "1.9.0"