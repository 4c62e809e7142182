"""calkeeper: OAuth token lifecycle and secure storage for Google Calendar."""

__version__ = "0.1.0"
