"""Chapter chat gateway: real-time rooms, message history and HTTP fallback."""

__version__ = "0.1.0"
