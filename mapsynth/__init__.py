"""Conflate external geodata onto a road network and synthesize reproducible trip scenarios."""

__version__ = "0.1.0"
