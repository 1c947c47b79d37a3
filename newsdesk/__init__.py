"""newsdesk - offline-tolerant tiered article fetching for paginated news clients."""

__version__ = "0.1.0"
