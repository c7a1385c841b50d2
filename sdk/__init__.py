"""sdk - Shared infrastructure for catalog applications

Contains reusable modules for:
    - transport: Change-notification channels (NATS, in-process memory bus)
    - logging: Structured logging with per-session context
"""

__version__ = "1.0.0"
__versionInfo__ = (1, 0, 0)
__changelog__ = {
    "1.0.0": "Change channel transports and structured logging for catalog clients"
}
