"""sessionq: query and streaming engine for append-only conversation logs."""

__version__ = "0.1.0"
