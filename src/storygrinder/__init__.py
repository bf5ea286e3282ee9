"""StoryGrinder - multi-provider streaming core for manuscript tools."""

__version__ = "0.1.0"
