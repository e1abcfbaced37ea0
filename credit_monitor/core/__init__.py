"""
Core modules for Credit Monitor.

This package contains usage analytics, alerting, the monitoring
scheduler and the error taxonomy shared across the project.
"""
