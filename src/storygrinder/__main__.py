"""Entry point for running StoryGrinder as a module.

This allows running: python -m storygrinder
"""

from .cli import main

if __name__ == "__main__":
    main()
