"""
Procguard - process supervision and automatic recovery.

Supervises long-running build/run processes, classifies errors in their
output, keeps a bounded durable history and restarts failed processes with
bounded, backed-off retries.
"""

__version__ = "0.1.0"
