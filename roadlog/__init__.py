"""Driving detection and trip-log engine."""

__version__ = "0.1.0"
