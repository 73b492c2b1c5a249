"""Service layer components for sitemirror."""

from .assets import AssetDownloader, AssetPipeline, ImageOptimizer, dedup_stats
from .challenge import ChallengeBypass, ChallengeKind, ChallengeSolver, classify_page, register_solver
from .orchestrator import CloneOrchestrator, CrawlState, get_orchestrator, set_orchestrator
from .progress import ProgressHub, ProgressStream
from .proxy import ProxyHealthMonitor, ProxyPool
from .verification import VerificationScorer
from .worker import QueueWorker

__all__ = [
    "AssetDownloader",
    "AssetPipeline",
    "ImageOptimizer",
    "dedup_stats",
    "ChallengeBypass",
    "ChallengeKind",
    "ChallengeSolver",
    "classify_page",
    "register_solver",
    "CloneOrchestrator",
    "CrawlState",
    "get_orchestrator",
    "set_orchestrator",
    "ProgressHub",
    "ProgressStream",
    "ProxyHealthMonitor",
    "ProxyPool",
    "VerificationScorer",
    "QueueWorker",
]
