"""
Quality scoring for snowball candidates.

The score is a pure function of the submission: the same email, karma,
content and domain lists always produce the same value. No I/O.

Scoring model:
- Each heuristic returns a signal in [0, 1], or None when it has nothing
  to say about the submission
- The score is the weighted mean of the signals that fired, rounded to
  4 decimals
- No signal at all -> neutral 0.5
- Malformed address or blocked domain -> exactly 0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence
import re
import logging

from core.config import settings
from snowball.intake.normalizer import EmailNormalizer, NormalizedEmail

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
SCORE_PRECISION = 4

UNKNOWN_DOMAIN_SIGNAL = 0.5
PERSONAL_DOMAIN_SIGNAL = 0.6
DISPOSABLE_DOMAIN_SIGNAL = 0.1
TRUSTED_DOMAIN_SIGNAL = 1.0


@dataclass
class Submission:
    """Everything the scorer looks at for one candidate"""
    email: str
    submitter_karma: Optional[int] = None
    content: Optional[str] = None
    blocked_domains: Sequence[str] = field(default_factory=tuple)
    trusted_domains: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def for_repository(cls, repository, email: str, submitter_karma: Optional[int] = None,
                       content: Optional[str] = None) -> "Submission":
        return cls(
            email=email,
            submitter_karma=submitter_karma,
            content=content,
            blocked_domains=tuple(repository.blocked_domains or ()),
            trusted_domains=tuple(repository.trusted_domains or ()),
        )


def domain_matches(domain: str, domains: Iterable[str]) -> bool:
    """Exact match or subdomain of any listed domain"""
    for listed in domains:
        listed = listed.strip().lower()
        if not listed:
            continue
        if domain == listed or domain.endswith("." + listed):
            return True
    return False


# ============================================================================
# Heuristics
# ============================================================================

class QualityHeuristic(ABC):
    """One weighted signal contributing to the quality score"""

    name: str = "heuristic"

    def __init__(self, weight: float = 1.0):
        if weight <= 0:
            raise ValueError(f"heuristic weight must be positive, got {weight}")
        self.weight = weight

    @abstractmethod
    def evaluate(self, email: NormalizedEmail, submission: Submission) -> Optional[float]:
        """Return a signal in [0, 1], or None for no signal"""
        pass


class DomainReputationHeuristic(QualityHeuristic):
    """
    Domain reputation lookup.

    Order: repository trusted domains, explicit reputation table,
    disposable providers, personal webmail, then unknown (neutral).
    """

    name = "domain_reputation"

    def __init__(
        self,
        weight: float = 0.5,
        reputation: Optional[Dict[str, float]] = None,
        disposable_domains: Optional[Iterable[str]] = None,
        personal_domains: Optional[Iterable[str]] = None,
    ):
        super().__init__(weight)
        self.reputation = {k.strip().lower(): float(v) for k, v in (reputation or {}).items()}
        self.disposable_domains = set(
            d.lower() for d in (disposable_domains if disposable_domains is not None else settings.SNOWBALL_DISPOSABLE_DOMAINS)
        )
        self.personal_domains = set(
            d.lower() for d in (personal_domains if personal_domains is not None else settings.SNOWBALL_PERSONAL_DOMAINS)
        )

    def evaluate(self, email: NormalizedEmail, submission: Submission) -> Optional[float]:
        domain = email.domain
        if domain_matches(domain, submission.trusted_domains):
            return TRUSTED_DOMAIN_SIGNAL
        if domain in self.reputation:
            return self.reputation[domain]
        if domain_matches(domain, self.disposable_domains):
            return DISPOSABLE_DOMAIN_SIGNAL
        if domain in self.personal_domains:
            return PERSONAL_DOMAIN_SIGNAL
        return UNKNOWN_DOMAIN_SIGNAL


class SubmitterKarmaHeuristic(QualityHeuristic):
    """Submitter karma scaled linearly up to a saturation point"""

    name = "submitter_karma"

    def __init__(self, weight: float = 0.3, saturation: Optional[int] = None):
        super().__init__(weight)
        self.saturation = saturation or settings.SNOWBALL_KARMA_SATURATION

    def evaluate(self, email: NormalizedEmail, submission: Submission) -> Optional[float]:
        if submission.submitter_karma is None:
            return None
        karma = max(0, int(submission.submitter_karma))
        return min(karma / self.saturation, 1.0)


class LocalPartHeuristic(QualityHeuristic):
    """
    Penalize machine, test and role addresses.

    Only fires on a match; ordinary personal local parts carry no signal.
    """

    name = "local_part"

    MACHINE_PATTERNS = [
        re.compile(r"^(no-?reply|do-?not-?reply|donotreply|mailer-daemon|postmaster|bounces?)$"),
        re.compile(r"^test\d*$"),
        re.compile(r"\+spam$"),
    ]
    ROLE_PATTERNS = [
        re.compile(r"^(admin|administrator|info|support|sales|contact|webmaster|hello)$"),
    ]

    def __init__(self, weight: float = 0.2, machine_signal: float = 0.0, role_signal: float = 0.3):
        super().__init__(weight)
        self.machine_signal = machine_signal
        self.role_signal = role_signal

    def evaluate(self, email: NormalizedEmail, submission: Submission) -> Optional[float]:
        local_part = email.local_part
        if any(p.search(local_part) for p in self.MACHINE_PATTERNS):
            return self.machine_signal
        if any(p.search(local_part) for p in self.ROLE_PATTERNS):
            return self.role_signal
        return None


class ContentHeuristic(QualityHeuristic):
    """Referral note quality: substance up, link stuffing and spam phrases down"""

    name = "content"

    SPAM_PHRASES = (
        "click here",
        "free money",
        "act now",
        "limited time",
        "winner",
        "100% free",
        "buy now",
    )
    URL_RE = re.compile(r"https?://", re.IGNORECASE)

    def __init__(self, weight: float = 0.2, min_substantive_length: int = 20, max_links: int = 2):
        super().__init__(weight)
        self.min_substantive_length = min_substantive_length
        self.max_links = max_links

    def evaluate(self, email: NormalizedEmail, submission: Submission) -> Optional[float]:
        text = (submission.content or "").strip()
        if not text:
            return None

        lowered = text.lower()
        if any(phrase in lowered for phrase in self.SPAM_PHRASES):
            return 0.0

        signal = 0.5
        if len(text) >= self.min_substantive_length:
            signal += 0.3
        if len(self.URL_RE.findall(text)) > self.max_links:
            signal -= 0.4
        if text.isupper() and len(text) > 10:
            signal -= 0.2
        return max(0.0, min(1.0, signal))


def default_heuristics() -> List[QualityHeuristic]:
    return [
        DomainReputationHeuristic(),
        SubmitterKarmaHeuristic(),
        LocalPartHeuristic(),
        ContentHeuristic(),
    ]


# ============================================================================
# Scorer
# ============================================================================

class QualityScorer:
    """
    Weighted-heuristic quality scorer.

    Usage:
        scorer = QualityScorer()
        score = scorer.score(Submission(email="dev@example.com", submitter_karma=420))
    """

    def __init__(
        self,
        heuristics: Optional[List[QualityHeuristic]] = None,
        blocked_domains: Optional[Iterable[str]] = None,
    ):
        self.heuristics = heuristics if heuristics is not None else default_heuristics()
        self.blocked_domains = [
            d.lower() for d in (blocked_domains if blocked_domains is not None else settings.SNOWBALL_BLOCKED_DOMAINS)
        ]
        self.normalizer = EmailNormalizer()

    def score(self, submission: Submission) -> float:
        return self.explain(submission)["score"]

    def explain(self, submission: Submission) -> Dict[str, Any]:
        """
        Score with a per-heuristic breakdown.

        Returns:
            {"score", "valid", "blocked", "signals": {name: {"value", "weight"}}}
        """
        email = self.normalizer.try_normalize(submission.email)
        if email is None:
            return {"score": 0.0, "valid": False, "blocked": False, "signals": {}}

        if self._is_blocked(email.domain, submission):
            return {"score": 0.0, "valid": True, "blocked": True, "signals": {}}

        signals: Dict[str, Dict[str, Optional[float]]] = {}
        weighted_sum = 0.0
        total_weight = 0.0

        for heuristic in self.heuristics:
            value = heuristic.evaluate(email, submission)
            signals[heuristic.name] = {"value": value, "weight": heuristic.weight}
            if value is None:
                continue
            value = max(0.0, min(1.0, float(value)))
            weighted_sum += value * heuristic.weight
            total_weight += heuristic.weight

        if total_weight == 0:
            score = NEUTRAL_SCORE
        else:
            score = round(weighted_sum / total_weight, SCORE_PRECISION)

        return {"score": score, "valid": True, "blocked": False, "signals": signals}

    def _is_blocked(self, domain: str, submission: Submission) -> bool:
        return domain_matches(domain, self.blocked_domains) or domain_matches(domain, submission.blocked_domains)
