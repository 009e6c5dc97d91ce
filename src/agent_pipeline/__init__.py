"""Agent pipeline - AI-assisted code-change workflows over interchangeable agent backends."""

__version__ = "0.1.0"
