"""Tessera analytics core: cached views, insights, monitoring and realtime fan-out."""

__version__ = "0.1.0"
