"""Forge Service: sandboxed Foundry compile, test and script jobs."""

__version__ = "1.0.0"
