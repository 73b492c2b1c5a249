"""
sitemirror - capture live websites into self-contained offline mirrors.

The engine renders pages through crawl4ai browser sessions, routes traffic
through a health-tracked proxy pool, bypasses anti-bot interstitials,
deduplicates assets by content hash and scores the finished mirror.
Job state, cache entries and the distributed work queue share one SQLite
database so crawls can be resumed and fanned out to worker processes.
"""

from .version import __version__

__all__ = ["__version__"]
