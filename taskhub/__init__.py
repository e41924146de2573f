"""TaskHub: project and task management with offline-first sync."""

__version__ = "0.1.0"
