"""Durable orchestration engine for multi-unit proposal generation."""

__version__ = "0.1.0"
