"""aigate: authenticated, rate-limited gateway for chat, vision and speech models."""

__version__ = "0.1.0"
