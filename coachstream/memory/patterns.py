"""
Pattern Detection

Fixed rule catalog run over a user's insights after each turn:

- correlation: two keyword groups, each matched by category OR keyword;
  confidence 0.6 + 0.1 per matched group
- contradiction: two (category AND keyword) conditions both present;
  confidence 0.7
- trend: one category mentioned at least 3 times;
  confidence min(0.9, 0.5 + 0.1 * count)

Patterns only reference persisted insights. A detected pattern is stored
unless the user already has an unaddressed pattern with the same description.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.database import Database, dumps, to_iso, utcnow
from .models import DetectedPattern, Insight, InsightCandidate, Pattern

logger = logging.getLogger(__name__)

TREND_MIN_COUNT = 3
TREND_MAX_IDS = 5
NEW_ID_PREFIX = "new-"


@dataclass(frozen=True)
class CorrelationRule:
    name: str
    categories: Tuple[str, str]
    keywords: Tuple[Tuple[str, ...], Tuple[str, ...]]
    suggestion: str


@dataclass(frozen=True)
class ContradictionRule:
    name: str
    first: Tuple[str, Tuple[str, ...]]
    second: Tuple[str, Tuple[str, ...]]
    suggestion: str


CORRELATION_RULES = (
    CorrelationRule(
        "coffee_sleep", ("nutrition", "sleep"),
        (("coffee", "caffeine", "espresso"), ("sleep", "tired", "fall asleep")),
        "Coffee intake may be affecting sleep quality. Ask whether they drink coffee after 2 pm.",
    ),
    CorrelationRule(
        "stress_eating", ("stress", "nutrition"),
        (("stress", "pressure", "work"), ("eat", "hunger", "snack")),
        "Possible link between stress and eating behavior. Bring up emotional eating.",
    ),
    CorrelationRule(
        "sleep_training", ("sleep", "training"),
        (("sleep", "tired", "energy"), ("training", "workout", "motivation")),
        "Sleep quality affects training motivation. Optimize recovery phases.",
    ),
    CorrelationRule(
        "alcohol_goals", ("nutrition", "goals"),
        (("alcohol", "beer", "wine"), ("lose weight", "cut", "weight")),
        "Alcohol may be holding back weight-loss goals. Talk about its calories.",
    ),
    CorrelationRule(
        "water_energy", ("nutrition", "emotions"),
        (("water", "drink", "dehydrated"), ("tired", "energy", "exhausted", "drained")),
        "Dehydration could be affecting energy levels. Check drinking habits.",
    ),
    CorrelationRule(
        "sleep_mood", ("sleep", "emotions"),
        (("sleep", "tired", "awake"), ("irritable", "moody", "sad", "down")),
        "Poor sleep affects mood. Improve sleep hygiene.",
    ),
    CorrelationRule(
        "training_stress", ("training", "stress"),
        (("training", "workout", "gym"), ("stress", "relax", "unwind")),
        "Use training as a stress outlet. Suggest deliberate training times.",
    ),
    CorrelationRule(
        "sugar_energy", ("nutrition", "emotions"),
        (("sugar", "sweet", "chocolate"), ("tired", "crash", "slump", "energy")),
        "Sugar intake causes energy crashes. Recommend steadier energy sources.",
    ),
    CorrelationRule(
        "protein_muscle", ("nutrition", "training"),
        (("protein", "meat", "whey"), ("muscle", "strength", "build")),
        "Optimize protein intake for muscle gain. Check timing and amount.",
    ),
)

CONTRADICTION_RULES = (
    ContradictionRule(
        "goal_behavior",
        ("goals", ("lose weight", "cut", "weight")),
        ("nutrition", ("fast food", "sweets", "snacking", "chips")),
        "Weight-loss goal conflicts with eating habits. Address it gently.",
    ),
    ContradictionRule(
        "health_smoking",
        ("goals", ("healthy", "fit", "endurance")),
        ("habits", ("smok", "cigarette", "vape")),
        "Smoking conflicts with health goals. Raise it carefully.",
    ),
    ContradictionRule(
        "muscle_only_cardio",
        ("goals", ("muscle", "bulk", "mass", "strength")),
        ("training", ("only cardio", "jogging", "running", "no weights")),
        "Muscle gain is hard with cardio alone. Recommend strength training.",
    ),
    ContradictionRule(
        "weightloss_no_training",
        ("goals", ("lose weight", "weight", "fat")),
        ("training", ("no sport", "not training", "no exercise")),
        "Losing weight without movement is harder. Suggest easing movement in.",
    ),
    ContradictionRule(
        "health_alcohol",
        ("goals", ("healthy", "liver", "detox")),
        ("habits", ("alcohol", "drinking", "beer", "wine")),
        "Regular alcohol versus health goals. Discuss balance.",
    ),
    ContradictionRule(
        "sleep_late_caffeine",
        ("goals", ("sleep better", "improve sleep")),
        ("habits", ("evening coffee", "late caffeine", "energy drink")),
        "Late caffeine versus the sleep goal. Recommend a caffeine curfew.",
    ),
)


@dataclass
class _Item:
    id: str
    category: str
    text: str


def _matches_any(text: str, keywords: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def check_correlation(rule: CorrelationRule, items: Sequence[_Item]) -> Optional[Tuple[List[str], float]]:
    ids: List[str] = []
    found = 0
    for category, keywords in zip(rule.categories, rule.keywords):
        group = [i for i in items if i.category == category or _matches_any(i.text, keywords)]
        if group:
            found += 1
            ids.extend(i.id for i in group)

    if found >= 2:
        return list(dict.fromkeys(ids)), round(0.6 + found * 0.1, 2)
    return None


def check_contradiction(rule: ContradictionRule, items: Sequence[_Item]) -> Optional[Tuple[List[str], float]]:
    first = [i for i in items if i.category == rule.first[0] and _matches_any(i.text, rule.first[1])]
    second = [i for i in items if i.category == rule.second[0] and _matches_any(i.text, rule.second[1])]
    if first and second:
        return [i.id for i in first] + [i.id for i in second], 0.7
    return None


def detect_trends(items: Sequence[_Item]) -> List[DetectedPattern]:
    counts: Dict[str, int] = {}
    for item in items:
        counts[item.category] = counts.get(item.category, 0) + 1

    trends = []
    for category, count in counts.items():
        if count < TREND_MIN_COUNT:
            continue
        members = [i.id for i in items if i.category == category][:TREND_MAX_IDS]
        trends.append(DetectedPattern(
            pattern_type="trend",
            description=f"Recurring topic: {category} ({count}x mentioned)",
            insight_ids=members,
            confidence=round(min(0.9, 0.5 + count * 0.1), 2),
            suggestion=f"The user keeps coming back to {category}. It may be a focus area.",
        ))
    return trends


def detect(
    new_candidates: Sequence[InsightCandidate],
    existing: Sequence[Insight],
) -> List[DetectedPattern]:
    """
    Run the rule catalog over fresh candidates plus persisted insights.

    Candidates whose text already exists among the persisted insights are
    skipped so a just-saved fact is not counted twice.
    """
    known_texts = {i.text for i in existing}
    items = [
        _Item(id=f"{NEW_ID_PREFIX}{idx}", category=c.category, text=c.text)
        for idx, c in enumerate(new_candidates)
        if c.text not in known_texts
    ]
    items += [_Item(id=i.id, category=i.category, text=i.text) for i in existing]

    detected: List[DetectedPattern] = []

    for rule in CORRELATION_RULES:
        match = check_correlation(rule, items)
        if match:
            detected.append(DetectedPattern(
                pattern_type="correlation",
                description=f"Possible correlation: {rule.name.replace('_', ' ↔ ', 1)}",
                insight_ids=match[0],
                confidence=match[1],
                suggestion=rule.suggestion,
            ))

    for rule in CONTRADICTION_RULES:
        match = check_contradiction(rule, items)
        if match:
            detected.append(DetectedPattern(
                pattern_type="contradiction",
                description=f"Possible contradiction: {rule.name.replace('_', ' vs ', 1)}",
                insight_ids=match[0],
                confidence=match[1],
                suggestion=rule.suggestion,
            ))

    detected.extend(detect_trends(items))
    return detected


class PatternStore:
    """Persistence for detected patterns."""

    def __init__(self, db: Database):
        self.db = db

    def save_new(self, user_id: str, patterns: Sequence[DetectedPattern], now: Optional[datetime] = None) -> List[str]:
        """Store patterns whose description is not already open for this user."""
        if not patterns:
            return []

        rows = self.db.fetchall(
            "SELECT description FROM patterns WHERE user_id = :user_id AND is_addressed = 0",
            {"user_id": user_id},
        )
        open_descriptions = {row["description"] for row in rows}

        stamp = to_iso(now or utcnow())
        saved = []
        for pattern in patterns:
            if pattern.description in open_descriptions:
                continue
            pattern_id = str(uuid.uuid4())
            self.db.insert("patterns", {
                "id": pattern_id,
                "user_id": user_id,
                "pattern_type": pattern.pattern_type,
                "description": pattern.description,
                "insight_ids": dumps([i for i in pattern.insight_ids if not i.startswith(NEW_ID_PREFIX)]),
                "confidence": pattern.confidence,
                "suggestion": pattern.suggestion,
                "is_addressed": 0,
                "created_at": stamp,
            })
            open_descriptions.add(pattern.description)
            saved.append(pattern_id)

        if saved:
            logger.info(f"[PATTERNS] Saved {len(saved)} new patterns for user={user_id}")
        return saved

    def load_unaddressed(self, user_id: str, limit: int = 5) -> List[Pattern]:
        rows = self.db.fetchall(
            "SELECT * FROM patterns WHERE user_id = :user_id AND is_addressed = 0 "
            "ORDER BY confidence DESC, created_at DESC LIMIT :limit",
            {"user_id": user_id, "limit": limit},
        )
        return [Pattern.from_row(row) for row in rows]

    def mark_addressed(self, pattern_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        """Flag a pattern as addressed; returns False if no such (open) pattern."""
        where = "id = :id AND is_addressed = 0"
        params = {"id": pattern_id}
        if user_id is not None:
            where += " AND user_id = :user_id"
            params["user_id"] = user_id
        updated = self.db.update(
            "patterns",
            {"is_addressed": 1, "addressed_at": to_iso(now or utcnow())},
            where,
            params,
        )
        return updated > 0

    def get(self, pattern_id: str) -> Optional[Pattern]:
        row = self.db.fetchone("SELECT * FROM patterns WHERE id = :id", {"id": pattern_id})
        return Pattern.from_row(row) if row else None
