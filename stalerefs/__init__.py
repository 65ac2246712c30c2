"""stalerefs package marker.

Finds stale branches and push/merge requests and optionally deletes or
closes them. The engine lives in ``stalerefs.engine``; backends live in
``stalerefs.sources``.
"""

__version__ = "0.3.0"

__all__ = [
    "cli",
    "config",
    "engine",
    "error_report",
    "metrics",
    "sources",
]
