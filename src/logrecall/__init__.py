"""logrecall: search Claude Code and Codex conversation logs."""

__version__ = "0.3.0"
