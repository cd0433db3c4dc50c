"""Street survey recorder: durable capture storage and resilient publishing."""

__version__ = "0.1.0"
