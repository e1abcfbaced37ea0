"""Command-line interface for Credit Monitor."""
