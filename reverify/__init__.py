"""Identity re-verification service: biometric credential ceremonies, face
similarity fallback and officer review escalation."""

__version__ = "0.1.0"
