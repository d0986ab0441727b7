"""team-bridge: file-based coordination for Codex and Gemini CLI workers."""

__version__ = "0.1.0"
