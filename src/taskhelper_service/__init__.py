"""TaskHelper marketplace service: task, bid, booking and dispute lifecycles."""

__version__ = "0.1.0"
