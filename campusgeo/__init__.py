"""Resolve OpenStreetMap campus boundary polygons for institution point locations."""

__version__ = "0.1.0"
