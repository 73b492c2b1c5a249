"""Version information for the sitemirror package."""

__version__ = "0.1.0"
__version_info__ = (0, 1, 0)

CRAWL4AI_VERSION = "0.6.3+"
