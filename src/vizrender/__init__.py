"""Resumable render queue for audio visualizer videos."""

__version__ = "0.1.0"
