"""Fault-tolerant orchestration core for the porter-bridges content pipeline."""

__version__ = "1.0.0"
