# shutdownd/__init__.py
"""
shutdownd: power alarm watcher that shuts the host down.

Bus-first daemon that:
- subscribes to a power alarm channel on the Redis bus,
- validates each power event,
- evaluates an arm / disarm policy expression against it,
- schedules a delayed shutdown and cancels it if power recovers in time.

Configured via environment variables (see settings.py) and CLI flags (see main.py).
"""

__version__ = "0.3.0"
