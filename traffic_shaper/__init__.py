"""Traffic shaping for paid model calls: admission control and model routing."""

__version__ = "0.1.0"
