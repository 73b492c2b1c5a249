"""Core layer components for sitemirror."""

from .browser import BrowserSession, BrowserSessionPool, NavigationResult
from .cache import ChangeDecision, ChangeReason, ContentCache, IncrementalUpdater, content_hash
from .fetcher import PageFetcher
from .html import MirrorLayout, rewrite_page_html
from .jobs import CloneJob, InMemoryJobStore, JobStatus, JobStore, SqlJobStore
from .queue import QueueDispatcher, TaskQueue
from .urls import ScopePolicy, canonicalize_url, dedup_key, validate_target_url

__all__ = [
    "BrowserSession",
    "BrowserSessionPool",
    "NavigationResult",
    "ChangeDecision",
    "ChangeReason",
    "ContentCache",
    "IncrementalUpdater",
    "content_hash",
    "PageFetcher",
    "MirrorLayout",
    "rewrite_page_html",
    "CloneJob",
    "InMemoryJobStore",
    "JobStatus",
    "JobStore",
    "SqlJobStore",
    "QueueDispatcher",
    "TaskQueue",
    "ScopePolicy",
    "canonicalize_url",
    "dedup_key",
    "validate_target_url",
]
