"""
jobkeeper - supervision for background jobs.

Provides heartbeat-based stuck detection, health verdicts, resource limit
enforcement, circuit breakers, a dead letter queue, deployment draining and
worker pool supervision.
"""

__version__ = "0.1.0"
