"""Configuration loading for Credit Monitor."""
