"""
Memory data types: insights, candidates and patterns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.database import from_iso, loads

CATEGORIES = (
    "goals",
    "health",
    "training",
    "nutrition",
    "body",
    "sleep",
    "stress",
    "habits",
    "emotions",
    "supplements",
    "preferences",
)

IMPORTANCE_LEVELS = ("critical", "high", "medium", "low")
DEFAULT_IMPORTANCE = "medium"

PATTERN_TYPES = ("correlation", "contradiction", "trend")


def clamp_confidence(value: Any, default: float = 0.8) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


@dataclass
class InsightCandidate:
    """A validated insight extracted from a message, not yet persisted."""
    category: str
    text: str
    confidence: float = 0.8
    importance: str = DEFAULT_IMPORTANCE
    subcategory: Optional[str] = None
    raw_quote: Optional[str] = None
    # text of a known insight this one replaces (a changed fact)
    supersedes: Optional[str] = None

    def __post_init__(self):
        if self.category not in CATEGORIES:
            raise ValueError(f"Unknown insight category: {self.category}")
        if self.importance not in IMPORTANCE_LEVELS:
            self.importance = DEFAULT_IMPORTANCE
        self.confidence = clamp_confidence(self.confidence)


@dataclass
class Insight:
    """A persisted fact learned about a user."""
    id: str
    user_id: str
    category: str
    text: str
    confidence: float
    importance: str
    source: str
    extracted_at: datetime
    last_relevant_at: datetime
    subcategory: Optional[str] = None
    raw_quote: Optional[str] = None
    source_id: Optional[str] = None
    is_active: bool = True
    is_current: bool = True
    superseded_by: Optional[str] = None
    reference_count: int = 1
    embedding: Optional[List[float]] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Insight":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            category=row["category"],
            text=row["insight"],
            confidence=clamp_confidence(row.get("confidence")),
            importance=row.get("importance") or DEFAULT_IMPORTANCE,
            source=row.get("source") or "chat",
            extracted_at=from_iso(row["extracted_at"]),
            last_relevant_at=from_iso(row["last_relevant_at"]),
            subcategory=row.get("subcategory"),
            raw_quote=row.get("raw_quote"),
            source_id=row.get("source_id"),
            is_active=bool(row.get("is_active", 1)),
            is_current=bool(row.get("is_current", 1)),
            superseded_by=row.get("superseded_by"),
            reference_count=int(row.get("reference_count") or 1),
            embedding=loads(row.get("embedding")),
            expires_at=from_iso(row.get("expires_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "subcategory": self.subcategory,
            "insight": self.text,
            "confidence": self.confidence,
            "importance": self.importance,
            "source": self.source,
            "isActive": self.is_active,
            "isCurrent": self.is_current,
            "referenceCount": self.reference_count,
            "extractedAt": self.extracted_at.isoformat(),
            "lastRelevantAt": self.last_relevant_at.isoformat(),
        }


@dataclass
class SaveResult:
    """Outcome of saving one candidate."""
    saved: bool
    insight_id: Optional[str] = None
    duplicate_of: Optional[str] = None
    superseded: Optional[str] = None


@dataclass
class DetectedPattern:
    """A pattern found by the rule catalog, before persistence."""
    pattern_type: str
    description: str
    insight_ids: List[str]
    confidence: float
    suggestion: str


@dataclass
class Pattern:
    """A persisted cross-insight pattern."""
    id: str
    user_id: str
    pattern_type: str
    description: str
    insight_ids: List[str]
    confidence: float
    suggestion: Optional[str]
    is_addressed: bool
    created_at: datetime
    addressed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Pattern":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            pattern_type=row["pattern_type"],
            description=row["description"],
            insight_ids=loads(row.get("insight_ids"), []),
            confidence=float(row["confidence"]),
            suggestion=row.get("suggestion"),
            is_addressed=bool(row.get("is_addressed")),
            created_at=from_iso(row["created_at"]),
            addressed_at=from_iso(row.get("addressed_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patternType": self.pattern_type,
            "description": self.description,
            "insightIds": list(self.insight_ids),
            "confidence": self.confidence,
            "suggestion": self.suggestion,
            "isAddressed": self.is_addressed,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class PipelineResult:
    """Summary of one post-turn memory run."""
    extracted: int = 0
    saved: int = 0
    duplicates: int = 0
    superseded: int = 0
    patterns: int = 0
    errors: List[str] = field(default_factory=list)
