"""Session-scoped tool orchestration engine for AI-assisted code review."""

__version__ = "0.1.0"
