"""Data models and model wrappers for memedex."""
