"""Pydantic models and record types for sitemirror."""

from .options import (
    ExportFormat, CrawlScope, RotationPolicy,
    ProxyEndpoint, ProxyOptions, BypassOptions, CacheOptions,
    RetryOptions, GeolocationOptions, CloneOptions,
)
from .records import (
    FrontierEntry, ChallengeOutcome, PageRecord, FetchOutcome, ProgressEvent,
    LinkStats, AssetStats, JsCheckResult, VerificationIssue, VerificationReport,
    JobRecord,
)

__all__ = [
    "ExportFormat", "CrawlScope", "RotationPolicy",
    "ProxyEndpoint", "ProxyOptions", "BypassOptions", "CacheOptions",
    "RetryOptions", "GeolocationOptions", "CloneOptions",
    "FrontierEntry", "ChallengeOutcome", "PageRecord", "FetchOutcome", "ProgressEvent",
    "LinkStats", "AssetStats", "JsCheckResult", "VerificationIssue", "VerificationReport",
    "JobRecord",
]
