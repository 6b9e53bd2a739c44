"""adlsync - Offline-first observation submission and sync engine."""

__version__ = "0.1.0"
