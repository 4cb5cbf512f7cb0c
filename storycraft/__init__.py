"""StoryCraft - story pitch generation from YouTube videos and text."""

from storycraft.config import APP_VERSION as __version__
from storycraft.app import create_app

__all__ = ['create_app', '__version__']
