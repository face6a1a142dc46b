# =============================================================================
# Credibility & Relevance Scoring — Pure Functions
# =============================================================================
#
# Two scorers used by the evidence gatherer:
#
# 1. score_credibility(metadata, content) -> [0, 1]
#    Starts from a base score for the publication type, then applies
#    bounded adjustments and clamps to the type's floor/ceiling:
#
#      base(publication type)            audited statements ~0.95,
#                                        social signals ~0.55, rumor ~0.40
#      + recency        (by age bucket)
#      + domain         (reputation list)
#      + author         (title / organisation)
#      + citations      (explicit counts, citation patterns in content)
#      + filename       (internal documents: "audit" up, "draft" down)
#      + jitter         (uniform in +/- credibility_jitter)
#      → clamp to [floor, ceiling] of the type
#
#    Apart from the jitter term the result is a deterministic function of
#    its inputs. Pass jitter=0.0 (or a seeded random.Random) in tests.
#
# 2. cosine_similarity(a, b) -> [-1, 1]
#    Pure. Zero-magnitude vectors score 0.0; length mismatch raises.
# =============================================================================

from __future__ import annotations

import enum
import math
import random
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import urlparse

from thesis_validator.config import settings


# ---------------------------------------------------------------------------
# Publication Types
# ---------------------------------------------------------------------------


class PublicationType(str, enum.Enum):
    AUDITED_FINANCIALS = "audited_financials"
    REGULATORY_FILING = "regulatory_filing"
    GOVERNMENT_REPORT = "government_report"
    ACADEMIC_JOURNAL = "academic_journal"
    MARKET_DATA = "market_data"
    INDUSTRY_REPORT = "industry_report"
    NEWS_MAJOR = "news_major"
    INTERNAL_DOCUMENT = "internal_document"
    EXPERT_INTERVIEW = "expert_interview"
    NEWS_TRADE = "news_trade"
    PRESS_RELEASE = "press_release"
    BLOG_EXPERT = "blog_expert"
    SOCIAL_SIGNAL = "social_signal"
    BLOG_GENERAL = "blog_general"
    FORUM = "forum"
    RUMOR = "rumor"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TypeProfile:
    base: float
    floor: float
    ceiling: float


TYPE_PROFILES: dict[PublicationType, TypeProfile] = {
    PublicationType.AUDITED_FINANCIALS: TypeProfile(0.95, 0.85, 0.99),
    PublicationType.REGULATORY_FILING: TypeProfile(0.90, 0.80, 0.97),
    PublicationType.GOVERNMENT_REPORT: TypeProfile(0.90, 0.75, 0.97),
    PublicationType.ACADEMIC_JOURNAL: TypeProfile(0.90, 0.70, 0.97),
    PublicationType.MARKET_DATA: TypeProfile(0.85, 0.70, 0.95),
    PublicationType.INDUSTRY_REPORT: TypeProfile(0.82, 0.65, 0.92),
    PublicationType.NEWS_MAJOR: TypeProfile(0.78, 0.60, 0.90),
    PublicationType.INTERNAL_DOCUMENT: TypeProfile(0.75, 0.45, 0.95),
    PublicationType.EXPERT_INTERVIEW: TypeProfile(0.72, 0.50, 0.88),
    PublicationType.NEWS_TRADE: TypeProfile(0.68, 0.50, 0.82),
    PublicationType.PRESS_RELEASE: TypeProfile(0.60, 0.40, 0.75),
    PublicationType.BLOG_EXPERT: TypeProfile(0.58, 0.40, 0.72),
    PublicationType.SOCIAL_SIGNAL: TypeProfile(0.55, 0.30, 0.68),
    PublicationType.BLOG_GENERAL: TypeProfile(0.45, 0.25, 0.60),
    PublicationType.FORUM: TypeProfile(0.42, 0.20, 0.55),
    PublicationType.RUMOR: TypeProfile(0.40, 0.15, 0.50),
    PublicationType.UNKNOWN: TypeProfile(0.50, 0.20, 0.80),
}

# Ordered: the first matching row wins, so filings precede the generic .gov row.
_DOMAIN_PUBLICATION_PATTERNS: list[tuple[tuple[str, ...], PublicationType]] = [
    (("sec.gov/archives", "sec.gov/cgi-bin/browse-edgar"), PublicationType.REGULATORY_FILING),
    ((".gov", ".gov.uk", ".gc.ca", "europa.eu"), PublicationType.GOVERNMENT_REPORT),
    ((".edu", "arxiv.org", "pubmed", "scholar.google", "jstor.org", "ssrn.com"),
     PublicationType.ACADEMIC_JOURNAL),
    (("mckinsey.com", "bcg.com", "bain.com", "deloitte.com", "pwc.com", "ey.com",
      "kpmg.com", "gartner.com", "forrester.com", "ibisworld.com"),
     PublicationType.INDUSTRY_REPORT),
    (("wsj.com", "nytimes.com", "ft.com", "bloomberg.com", "reuters.com",
      "economist.com", "washingtonpost.com", "bbc.com", "cnbc.com"),
     PublicationType.NEWS_MAJOR),
    (("techcrunch.com", "businessinsider.com", "forbes.com", "venturebeat.com",
      "theinformation.com", "seekingalpha.com"),
     PublicationType.NEWS_TRADE),
    (("prnewswire.com", "businesswire.com", "globenewswire.com", "prweb.com"),
     PublicationType.PRESS_RELEASE),
    (("medium.com", "substack.com", "wordpress.com", "blogger.com"),
     PublicationType.BLOG_GENERAL),
    (("twitter.com", "x.com", "linkedin.com", "facebook.com"),
     PublicationType.SOCIAL_SIGNAL),
    (("reddit.com", "quora.com", "stackoverflow.com"), PublicationType.FORUM),
]

_HIGH_REPUTATION_DOMAINS = (
    "sec.gov", "federalreserve.gov", "bls.gov", "census.gov", "wsj.com", "ft.com",
    "bloomberg.com", "reuters.com", "economist.com", "hbr.org", "mckinsey.com",
    "bcg.com", "bain.com",
)
_LOW_REPUTATION_DOMAINS = (
    "medium.com", "substack.com", "linkedin.com", "twitter.com", "x.com", "reddit.com",
)

# (pattern, adjustment) applied to internal document filenames and titles
_FILENAME_SIGNALS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"audit"), 0.08),
    (re.compile(r"\bfinal\b|_final|final_"), 0.03),
    (re.compile(r"board"), 0.03),
    (re.compile(r"draft"), -0.12),
    (re.compile(r"prelim|estimate|projection"), -0.05),
    (re.compile(r"\bwip\b|_wip|wip_|rough|scratch"), -0.08),
]
_AUDITED_STATEMENT = re.compile(r"audited?[\s_\-]*(financial|statement|accounts)")

_CITATION_PATTERNS = [
    re.compile(r"\[\d+\]"),
    re.compile(r"\(\w+,?\s*\d{4}\)"),
    re.compile(r"https?://\S+"),
    re.compile(r"according to", re.IGNORECASE),
    re.compile(r"cited in", re.IGNORECASE),
    re.compile(r"source:", re.IGNORECASE),
]

_EXPERT_TITLES = ("phd", "dr.", "professor", "ceo", "cfo", "analyst", "partner",
                  "director", "vp", "managing")
_REPUTABLE_ORGS = ("university", "institute", "research", "bank", "federal", "consulting")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SourceMetadata:
    """What is known about a source at scoring time."""

    url: str | None = None
    title: str | None = None
    filename: str | None = None
    author: str | None = None
    author_title: str | None = None
    author_organization: str | None = None
    publication_type: PublicationType | None = None
    published_at: datetime | None = None
    citation_count: int | None = None
    has_citations: bool = False
    is_internal: bool = False


@dataclass
class CredibilityAssessment:
    """Full breakdown behind a credibility score."""

    overall: float
    publication_type: PublicationType
    base: float
    adjustments: dict[str, float] = field(default_factory=dict)

    @property
    def recommendation(self) -> str:
        if self.overall >= 0.75:
            return "high_confidence"
        if self.overall >= 0.5:
            return "moderate_confidence"
        if self.overall >= 0.3:
            return "low_confidence"
        return "verify_required"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def assess_credibility(
    metadata: SourceMetadata,
    content: str | None = None,
    *,
    jitter: float | None = None,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> CredibilityAssessment:
    """
    Score a source and return every adjustment that went into it.

    Args:
        metadata: Source description (URL, filename, type, dates, author).
        content: Optional body text, scanned for citation indicators.
        jitter: Half-width of the uniform noise term. Defaults to
            settings.credibility_jitter; 0.0 makes the result deterministic.
        rng: Random source for the jitter term (seed it in tests).
        now: Reference time for recency; defaults to the current UTC time.

    Returns:
        CredibilityAssessment with `overall` in [floor, ceiling] of the type.
    """
    pub_type = infer_publication_type(metadata)
    profile = TYPE_PROFILES[pub_type]

    adjustments = {
        "recency": _recency_adjustment(metadata.published_at, now),
        "domain": _domain_adjustment(metadata.url),
        "author": _author_adjustment(metadata),
        "citations": _citation_adjustment(metadata, content),
        "filename": _filename_adjustment(metadata),
    }

    half_width = settings.credibility_jitter if jitter is None else jitter
    if half_width > 0:
        adjustments["jitter"] = (rng or random).uniform(-half_width, half_width)

    raw = profile.base + sum(adjustments.values())
    overall = min(max(raw, profile.floor), profile.ceiling)
    overall = min(max(overall, 0.0), 1.0)

    return CredibilityAssessment(
        overall=round(overall, 4),
        publication_type=pub_type,
        base=profile.base,
        adjustments=adjustments,
    )


def score_credibility(
    metadata: SourceMetadata,
    content: str | None = None,
    **kwargs,
) -> float:
    """Credibility in [0, 1]. See `assess_credibility` for the arguments."""
    return assess_credibility(metadata, content, **kwargs).overall


def infer_publication_type(metadata: SourceMetadata) -> PublicationType:
    """Explicit type, then filename signals, then URL/domain patterns."""
    if metadata.publication_type is not None:
        return metadata.publication_type

    name = (metadata.filename or metadata.title or "").lower()
    if metadata.is_internal:
        if _AUDITED_STATEMENT.search(name):
            return PublicationType.AUDITED_FINANCIALS
        return PublicationType.INTERNAL_DOCUMENT

    if metadata.url:
        host, full = _host_and_url(metadata.url)
        for patterns, pub_type in _DOMAIN_PUBLICATION_PATTERNS:
            if any(_matches(host, full, p) for p in patterns):
                return pub_type

    return PublicationType.UNKNOWN


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns:
        Value in [-1, 1]; 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    return min(max(similarity, -1.0), 1.0)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _host_and_url(url: str) -> tuple[str, str]:
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").lower().removeprefix("www.")
    return host, f"{host}{parsed.path.lower()}"


def _matches(host: str, full_url: str, pattern: str) -> bool:
    if "/" in pattern:
        return pattern in full_url
    if pattern.startswith("."):
        return host.endswith(pattern) or f"{pattern}." in f"{host}."
    return host == pattern or host.endswith(f".{pattern}")


def _recency_adjustment(published_at: datetime | None, now: datetime | None) -> float:
    if published_at is None:
        return -0.02

    reference = now or datetime.now(UTC)
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=UTC)
    age_days = (reference - published_at).total_seconds() / 86400

    if age_days < 30:
        return 0.03
    if age_days < 180:
        return 0.0
    if age_days < 365:
        return -0.03
    if age_days < 730:
        return -0.06
    if age_days < 1095:
        return -0.09
    return -0.12


def _domain_adjustment(url: str | None) -> float:
    if not url:
        return 0.0
    host, _ = _host_and_url(url)
    if any(_matches(host, host, d) for d in _HIGH_REPUTATION_DOMAINS):
        return 0.04
    if any(_matches(host, host, d) for d in _LOW_REPUTATION_DOMAINS):
        return -0.06
    return 0.0


def _author_adjustment(metadata: SourceMetadata) -> float:
    if not metadata.author:
        return 0.0

    score = 0.0
    if metadata.author_title:
        title = metadata.author_title.lower()
        score += 0.015
        if any(t in title for t in _EXPERT_TITLES):
            score += 0.015
    if metadata.author_organization:
        org = metadata.author_organization.lower()
        score += 0.01
        if any(o in org for o in _REPUTABLE_ORGS):
            score += 0.01
    return score


def _citation_adjustment(metadata: SourceMetadata, content: str | None) -> float:
    indicators = 0
    if content:
        for pattern in _CITATION_PATTERNS:
            indicators += len(pattern.findall(content))

    count = metadata.citation_count or 0
    if count > 50 or indicators > 10:
        return 0.04
    if count > 10 or indicators > 5 or metadata.has_citations:
        return 0.025
    if count > 0 or indicators > 0:
        return 0.01
    return 0.0


def _filename_adjustment(metadata: SourceMetadata) -> float:
    if not metadata.is_internal:
        return 0.0
    name = (metadata.filename or metadata.title or "").lower()
    return sum(delta for pattern, delta in _FILENAME_SIGNALS if pattern.search(name))
