"""Ops Queue CLI - operator tooling for the background job queue"""

__version__ = "1.0.0"
