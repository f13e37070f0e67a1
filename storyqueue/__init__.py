"""storyqueue - background task queue and execution engine for AI story generation."""

__version__ = "0.1.0"
