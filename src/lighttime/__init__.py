"""LightTime: multi-provider calendar sync core."""

__version__ = "0.1.0"
