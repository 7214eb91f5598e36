"""Self-hosted monitoring agent: scheduled health checks with a status API."""

__version__ = "0.1.0"
