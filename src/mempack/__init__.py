"""mempack - hybrid memory retrieval for chat bridges."""

__version__ = "0.3.0"
