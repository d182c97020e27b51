"""Interview proctoring core: signal debouncing, event classification,
session state, integrity scoring, live fan-out and reporting."""

__version__ = "1.0.0"
