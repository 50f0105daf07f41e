"""
Cadence - persistent, crash-recoverable schedule coordination.

- cadence.core: errors, logging and settings shared by every module
- cadence.core.scheduling: calendar expressions, triggers, dispatch and
  the scheduler coordinator
"""

__version__ = "0.1.0"
