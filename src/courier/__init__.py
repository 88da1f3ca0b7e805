"""courier: asynchronous multi-channel notification delivery engine."""

__version__ = "1.0.0"
