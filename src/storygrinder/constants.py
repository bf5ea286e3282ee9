"""Application-level constants for StoryGrinder.

This module keeps only cross-cutting app/file/path constants.
"""

# ============================================================================
# Application identity
# ============================================================================

APP_NAME = "storygrinder"

# ============================================================================
# File extensions
# ============================================================================

ARTIFACT_FILE_EXTENSION = ".txt"
SETTINGS_FILE_EXTENSION = ".json"

# ============================================================================
# Default directories and paths
# ============================================================================

# User data directory (created in home directory)
USER_DATA_DIR = f"~/.{APP_NAME}"

DEFAULT_SETTINGS_FILE = f"{USER_DATA_DIR}/settings{SETTINGS_FILE_EXTENSION}"
DEFAULT_PROJECTS_DIR = "~/writing_with_storygrinder"

# ============================================================================
# Prompt assembly
# ============================================================================

MANUSCRIPT_HEADER = "=== MANUSCRIPT ==="
MANUSCRIPT_FOOTER = "=== END MANUSCRIPT ==="

DEFAULT_LANGUAGE = "en-US"

ARTIFACT_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DISPLAY_UNKNOWN = "unknown"
