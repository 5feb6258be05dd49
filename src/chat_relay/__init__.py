"""Turn-taking relay between two chat agent endpoints."""

__version__ = "0.1.0"
