"""
Persona Resolver

Contextual modulation of persona dials as a pure fold: each modifier looks at
the turn context and the dials produced by the previous modifier, and either
returns new dials plus its name or leaves them untouched. The order of
MODIFIERS is part of the contract; modifiers compound on already-modified
values, never on the base.

Every scaled value is rounded half-up, then bounded (dial-specific floors and
ceilings), then clamped to [1, 10].
"""

import math
from functools import reduce
from typing import Callable, List, Optional, Tuple

from .models import Dials, PersonaContext, PersonaDefinition, ResolvedPersona, clamp_dial

Modifier = Callable[[Dials, PersonaContext], Optional[Tuple[Dials, str]]]

TENURE_THRESHOLD_DAYS = 30


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (dial values are always positive)."""
    return int(math.floor(value + 0.5))


def scale(value: int, factor: float, floor: int = 1, ceiling: int = 10) -> int:
    return clamp_dial(min(ceiling, max(floor, round_half_up(value * factor))))


# =============================================================================
# Modifiers (applied in declaration order)
# =============================================================================

def detail_level_modifier(dials: Dials, ctx: PersonaContext):
    level = ctx.detail_level
    if level == "ultra_short":
        return dials.with_values(
            depth=scale(dials.depth, 0.3, floor=2),
            opinion=scale(dials.opinion, 0.5, floor=2),
        ), "semantic_ultra_short"
    if level == "concise":
        return dials.with_values(
            depth=scale(dials.depth, 0.5, floor=3),
            opinion=scale(dials.opinion, 0.6, floor=3),
        ), "semantic_concise"
    if level == "moderate":
        return dials.with_values(
            depth=scale(dials.depth, 0.7, floor=4),
            opinion=scale(dials.opinion, 0.8, floor=4),
        ), "semantic_moderate"
    if level == "extensive":
        return dials, "semantic_extensive_full"
    return None


def motivation_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.topic not in ("motivation", "mindset"):
        return None
    return dials.with_values(
        energy=scale(dials.energy, 1.2),
        warmth=scale(dials.warmth, 1.1),
    ), "motivation_boost"


def training_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.topic != "training":
        return None
    return dials.with_values(
        challenge=scale(dials.challenge, 1.2),
        directness=scale(dials.directness, 1.1),
    ), "training_focus"


def nutrition_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.topic != "nutrition":
        return None
    return dials.with_values(depth=scale(dials.depth, 1.15)), "nutrition_depth"


def empathy_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.mood not in ("frustrated", "overwhelmed"):
        return None
    return dials.with_values(
        warmth=scale(dials.warmth, 1.3),
        challenge=scale(dials.challenge, 0.7),
        directness=scale(dials.directness, 0.8),
    ), "empathy_mode"


def momentum_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.mood != "positive":
        return None
    return dials.with_values(
        energy=scale(dials.energy, 1.15),
        challenge=scale(dials.challenge, 1.1),
    ), "momentum_boost"


def morning_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.time_of_day != "morning":
        return None
    return dials.with_values(energy=scale(dials.energy, 1.1)), "morning_energy"


def night_modifier(dials: Dials, ctx: PersonaContext):
    if ctx.time_of_day != "night":
        return None
    return dials.with_values(energy=scale(dials.energy, 0.8)), "evening_calm"


def tenure_modifier(dials: Dials, ctx: PersonaContext):
    if not ctx.tenure_days or ctx.tenure_days <= TENURE_THRESHOLD_DAYS:
        return None
    return dials.with_values(
        challenge=scale(dials.challenge, 1.1),
        directness=scale(dials.directness, 1.1),
    ), "established_relationship"


MODIFIERS: List[Modifier] = [
    detail_level_modifier,
    motivation_modifier,
    training_modifier,
    nutrition_modifier,
    empathy_modifier,
    momentum_modifier,
    morning_modifier,
    night_modifier,
    tenure_modifier,
]


def apply_modifiers(
    dials: Dials,
    ctx: PersonaContext,
    modifiers: Optional[List[Modifier]] = None,
) -> Tuple[Dials, Tuple[str, ...]]:
    """Fold the ordered modifiers over the dials.

    Returns:
        (resolved dials, names of the modifiers that fired, in order)
    """
    def step(acc: Tuple[Dials, Tuple[str, ...]], modifier: Modifier):
        current, applied = acc
        result = modifier(current, ctx)
        if result is None:
            return acc
        new_dials, name = result
        return new_dials, applied + (name,)

    return reduce(step, MODIFIERS if modifiers is None else modifiers, (dials, ()))


def resolve(base: PersonaDefinition, ctx: Optional[PersonaContext] = None) -> ResolvedPersona:
    """Resolve a persona for one turn."""
    ctx = ctx or PersonaContext()
    dials, applied = apply_modifiers(base.dials, ctx)
    return ResolvedPersona(base=base, dials=dials, applied_modifiers=applied, context=ctx)
