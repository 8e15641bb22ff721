"""
Persona data types.

A PersonaDefinition is operator-authored and read-only at request time.
ResolvedPersona is derived per turn and never persisted.
"""

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from ..core.database import loads

DIAL_NAMES = ("energy", "directness", "humor", "warmth", "depth", "challenge", "opinion")

DIAL_MIN = 1
DIAL_MAX = 10


def clamp_dial(value: float) -> int:
    return int(max(DIAL_MIN, min(DIAL_MAX, value)))


@dataclass(frozen=True)
class Dials:
    """The seven personality dials, each an int in [1, 10]."""
    energy: int = 5
    directness: int = 5
    humor: int = 5
    warmth: int = 5
    depth: int = 5
    challenge: int = 5
    opinion: int = 5

    def __post_init__(self):
        for name in DIAL_NAMES:
            object.__setattr__(self, name, clamp_dial(getattr(self, name)))

    def with_values(self, **changes: int) -> "Dials":
        return replace(self, **changes)

    def items(self) -> List[Tuple[str, int]]:
        return [(name, getattr(self, name)) for name in DIAL_NAMES]

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ExampleResponse:
    context: str
    response: str


@dataclass(frozen=True)
class PersonaDefinition:
    """Operator-defined personality profile."""
    id: str
    name: str
    dials: Dials = field(default_factory=Dials)
    description: str = ""
    phrases: Tuple[str, ...] = ()
    phrase_frequency: int = 0
    dialect: Optional[str] = None
    language_style: Optional[str] = None
    example_responses: Tuple[ExampleResponse, ...] = ()
    coach_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "phrase_frequency", max(0, min(10, int(self.phrase_frequency or 0))))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PersonaDefinition":
        """Build from a `personas` table row."""
        examples = tuple(
            ExampleResponse(context=str(ex.get("context", "")), response=str(ex.get("response", "")))
            for ex in loads(row.get("example_responses"), [])
            if isinstance(ex, dict)
        )
        return cls(
            id=row["id"],
            name=row["name"],
            dials=Dials(**{name: row.get(name) or 5 for name in DIAL_NAMES}),
            description=row.get("description") or "",
            phrases=tuple(loads(row.get("phrases"), [])),
            phrase_frequency=row.get("phrase_frequency") or 0,
            dialect=row.get("dialect"),
            language_style=row.get("language_style"),
            example_responses=examples,
            coach_id=row.get("coach_id"),
        )

    @classmethod
    def neutral(cls, coach_id: str = "default") -> "PersonaDefinition":
        """Balanced persona used when none can be loaded."""
        return cls(id=f"{coach_id}-neutral", name="Coach", coach_id=coach_id)


@dataclass(frozen=True)
class PersonaContext:
    """Turn signals that modulate the dials."""
    topic: Optional[str] = None
    mood: Optional[str] = None
    time_of_day: Optional[str] = None
    tenure_days: Optional[int] = None
    detail_level: Optional[str] = None


@dataclass(frozen=True)
class ResolvedPersona:
    """A persona after contextual modulation."""
    base: PersonaDefinition
    dials: Dials
    applied_modifiers: Tuple[str, ...] = ()
    context: PersonaContext = field(default_factory=PersonaContext)

    @property
    def name(self) -> str:
        return self.base.name
