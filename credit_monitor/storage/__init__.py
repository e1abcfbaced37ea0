"""
Storage layer for Credit Monitor.

Append-only balance snapshots and the usage records derived from them.
"""
