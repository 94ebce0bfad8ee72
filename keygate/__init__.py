"""KeyGate — API key authentication gate.

Issues per-owner API keys, authenticates requests carrying them, and
protects the account store with sliding-window rate limiting and automatic
failure blocking.
"""

__version__ = "1.0.0"
