"""
notifyhub

User registry and notification issuer services, kept loosely consistent
through HTTP calls and a Redis-backed event bus.
"""

__version__ = "1.0.0"
