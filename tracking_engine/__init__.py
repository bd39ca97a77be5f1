"""Nylo tracking service: event ingestion, identity correlation and domain verification"""

__version__ = "1.0.0"
