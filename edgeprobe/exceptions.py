"""Exceptions raised by edgeprobe."""


class SetupError(RuntimeError):
    """A run cannot start or finish: unreadable input, bad data, unwritable output."""
