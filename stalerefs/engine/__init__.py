"""stalerefs engine package — enumerate, classify, act, report."""

__all__ = [
    "candidates",
    "core",
    "errors",
    "executor",
    "report",
    "retry",
]
