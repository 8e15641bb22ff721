"""Persona definitions, contextual dial resolution and directive rendering."""

from .directive import build_directive
from .models import Dials, PersonaContext, PersonaDefinition, ResolvedPersona
from .resolver import resolve

__all__ = [
    "Dials",
    "PersonaContext",
    "PersonaDefinition",
    "ResolvedPersona",
    "build_directive",
    "resolve",
]
