"""Signal, position-lifecycle and risk engine for leveraged crypto trading."""

__version__ = "0.1.0"
