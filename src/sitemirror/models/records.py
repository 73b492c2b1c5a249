"""Records exchanged between the crawl layers."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..foundation.errors import ErrorKind


@dataclass(frozen=True)
class FrontierEntry:
    """A discovered URL awaiting or in fetch."""
    url: str
    depth: int
    dedup_key: str
    parent_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrontierEntry":
        return cls(
            url=data["url"],
            depth=data["depth"],
            dedup_key=data["dedup_key"],
            parent_url=data.get("parent_url"),
        )


@dataclass
class ChallengeOutcome:
    """What the challenge bypass layer saw and did for one page."""
    detected: str
    attempts: int = 0
    bypassed: bool = False
    solver: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PageRecord:
    """Result of fetching one URL."""
    url: str
    status_code: int
    content_hash: str
    depth: int = 0
    final_url: Optional[str] = None
    html: Optional[str] = None
    title: Optional[str] = None
    links: List[str] = field(default_factory=list)
    assets: List[str] = field(default_factory=list)
    fetch_duration: float = 0.0
    challenge: Optional[ChallengeOutcome] = None
    from_cache: bool = False
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    console_errors: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        """Checkpoint form: everything except the HTML body."""
        return {
            "url": self.url,
            "status_code": self.status_code,
            "content_hash": self.content_hash,
            "depth": self.depth,
            "final_url": self.final_url,
            "title": self.title,
            "links": list(self.links),
            "assets": list(self.assets),
            "fetch_duration": self.fetch_duration,
            "challenge": self.challenge.to_dict() if self.challenge else None,
            "from_cache": self.from_cache,
        }

    @classmethod
    def from_summary(cls, data: Dict[str, Any], html: Optional[str] = None) -> "PageRecord":
        challenge = data.get("challenge")
        return cls(
            url=data["url"],
            status_code=data.get("status_code", 200),
            content_hash=data["content_hash"],
            depth=data.get("depth", 0),
            final_url=data.get("final_url"),
            html=html,
            title=data.get("title"),
            links=list(data.get("links", [])),
            assets=list(data.get("assets", [])),
            fetch_duration=data.get("fetch_duration", 0.0),
            challenge=ChallengeOutcome(**challenge) if challenge else None,
            from_cache=data.get("from_cache", False),
        )


@dataclass
class FetchOutcome:
    """A fetch result: either a page or an error kind the orchestrator branches on."""
    url: str
    page: Optional[PageRecord] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    status_code: Optional[int] = None
    retry_after: Optional[float] = None
    retryable: bool = False
    proxy_key: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.page is not None and self.error_kind is None

    @classmethod
    def success(cls, page: PageRecord, proxy_key: Optional[str] = None) -> "FetchOutcome":
        return cls(url=page.url, page=page, status_code=page.status_code, proxy_key=proxy_key)

    @classmethod
    def failure(
        cls,
        url: str,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        retryable: bool = False,
        proxy_key: Optional[str] = None,
    ) -> "FetchOutcome":
        return cls(
            url=url,
            error_kind=kind,
            message=message,
            status_code=status_code,
            retry_after=retry_after,
            retryable=retryable,
            proxy_key=proxy_key,
        )


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update for a job."""
    job_id: str
    current_page: int
    total_pages: int
    status: str
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_contract(self) -> Dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "status": self.status,
            "message": self.message,
        }


class ContractModel(BaseModel):
    """Frozen record serialized with camelCase names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_contract(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LinkStats(ContractModel):
    total: int = 0
    valid: int = 0
    broken: int = 0


class AssetStats(ContractModel):
    expected: int = 0
    found: int = 0
    missing: int = 0


class JsCheckResult(ContractModel):
    enabled: bool = False
    pages_checked: int = 0
    pages_with_errors: int = 0
    errors: List[str] = Field(default_factory=list)


class VerificationIssue(ContractModel):
    """A single problem found in the mirror."""
    category: str
    severity: str = "warning"
    page: Optional[str] = None
    target: Optional[str] = None
    message: str


class VerificationReport(ContractModel):
    """Scored verdict on a finished mirror; immutable once built."""
    link_stats: LinkStats
    asset_stats: AssetStats
    js_check: JsCheckResult
    integrity_mismatches: List[str] = Field(default_factory=list)
    component_scores: Dict[str, float] = Field(default_factory=dict)
    weights: Dict[str, float] = Field(default_factory=dict)
    score: float
    passed: bool
    summary: str
    issues: List[VerificationIssue] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=datetime.utcnow)

    def issues_by_category(self) -> Dict[str, List[VerificationIssue]]:
        grouped: Dict[str, List[VerificationIssue]] = {}
        for issue in self.issues:
            grouped.setdefault(issue.category, []).append(issue)
        return grouped


class JobRecord(ContractModel):
    """Read-only view of a clone job handed to collaborators."""
    id: str
    url: str
    status: str
    pages_cloned: int = 0
    pages_cached: int = 0
    pages_failed: int = 0
    assets_captured: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    verification: Optional[VerificationReport] = None
    output_dir: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
