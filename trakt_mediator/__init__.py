"""Rate-limited, cached and token-aware access to the Trakt API."""

__version__ = "0.1.0"
