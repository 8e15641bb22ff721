"""
Coachstream

Conversational-turn engine for a health and fitness coaching product:
context aggregation, persona modulation, prompt assembly, provider routing
with fallback, SSE relay and the post-turn memory pipeline.
"""

__version__ = "1.0.0"
