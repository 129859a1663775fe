"""LP interval tracker - Replay-safe interval deltas and hourly aggregation for LP positions."""

__version__ = "0.1.0"
