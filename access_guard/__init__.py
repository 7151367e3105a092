"""Client-side trust and access validation: password strength, rate limiting, sessions."""

__version__ = "1.0.0"
