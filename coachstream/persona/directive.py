"""
Persona directive rendering.

Turns a ResolvedPersona into the persona block of the system prompt. Only
dials outside the neutral band [4, 6] get an explicit instruction.
"""

from typing import Dict, Optional, Sequence

from .models import ExampleResponse, ResolvedPersona, clamp_dial

NEUTRAL_LOW = 4
NEUTRAL_HIGH = 6
MAX_PHRASES = 5
MAX_EXAMPLES = 3

DIAL_DESCRIPTIONS: Dict[str, Dict[int, str]] = {
    "energy": {
        1: "Be calm and composed.",
        2: "Stay reserved and relaxed.",
        3: "Be moderately calm.",
        4: "Keep your energy low to medium.",
        5: "Keep a balanced energy.",
        6: "Show moderate energy.",
        7: "Be energetic and motivating.",
        8: "Be very energetic!",
        9: "Be VERY energetic and enthusiastic!",
        10: "MAXIMUM ENERGY! Be extremely enthusiastic and infectious!",
    },
    "directness": {
        1: "Be very empathetic and careful in how you communicate.",
        2: "Phrase things gently and indirectly.",
        3: "Be diplomatic in your choice of words.",
        4: "Balance gentleness and clarity.",
        5: "Communicate in a balanced way, neither too direct nor too careful.",
        6: "Be clear and explicit in what you say.",
        7: "Be direct and to the point.",
        8: "No beating around the bush. Say how it is.",
        9: "Be very direct. Plain talk without sugarcoating.",
        10: "MAXIMUM DIRECTNESS. Brutally honest, accept no excuses.",
    },
    "humor": {
        1: "Stay factual and serious. No humor.",
        2: "Very little humor, stay focused.",
        3: "Occasional light humor is fine.",
        4: "A smile here and there is allowed.",
        5: "Moderate humor when it fits.",
        6: "Use humor freely when it fits.",
        7: "Be humorous and relaxed.",
        8: "Work in plenty of humor and wit!",
        9: "Very humorous! Jokes and one-liners welcome.",
        10: "MAXIMUM HUMOR! Everything with wit and fun.",
    },
    "warmth": {
        1: "Stay factual and distant.",
        2: "Keep a professional distance.",
        3: "Some warmth is fine, but stay factual.",
        4: "Show moderate warmth.",
        5: "Be friendly and approachable.",
        6: "Show genuine warmth and interest.",
        7: "Be warm and empathetic.",
        8: "Very warm and understanding!",
        9: "Be extremely empathetic and caring.",
        10: "MAXIMUM WARMTH! Like a good friend or a father.",
    },
    "depth": {
        1: "Keep it shallow and simple.",
        2: "Don't go too deep, the basics are enough.",
        3: "Light explanations without much depth.",
        4: "Moderate depth when needed.",
        5: "Balanced depth, explain when relevant.",
        6: "Go deep when it helps.",
        7: "Explain background and connections.",
        8: "Deep answers with context.",
        9: "Very deep, philosophical and reflective.",
        10: "MAXIMUM DEPTH! Explain the why behind everything.",
    },
    "challenge": {
        1: "Don't push at all. Only support.",
        2: "Very gentle, no challenges.",
        3: "Light encouragement, but no pressure.",
        4: "Moderate encouragement.",
        5: "Balance support and demands.",
        6: "Challenge the user when appropriate.",
        7: "Be demanding and push for more.",
        8: "High expectations, no excuses!",
        9: "Very demanding, push to the limit!",
        10: "MAXIMUM CHALLENGE! Accept no excuses, expect excellence!",
    },
    "opinion": {
        1: "Stay completely neutral. No opinion of your own.",
        2: "Hold back on opinions.",
        3: "Be reserved with your own views.",
        4: "Share your own assessment now and then.",
        5: "Moderate opinion when asked.",
        6: "Share your assessment proactively.",
        7: "Have clear opinions and stand by them.",
        8: "Strong opinions, own them!",
        9: "Very opinionated, take a clear position.",
        10: "MAXIMUM OPINION! Say clearly what is right and wrong.",
    },
}


def dial_description(dial: str, value: int) -> str:
    return DIAL_DESCRIPTIONS[dial].get(clamp_dial(value), DIAL_DESCRIPTIONS[dial][5])


def phrase_instruction(phrases: Sequence[str], frequency: int) -> Optional[str]:
    """Five-tier usage instruction for signature phrases, or None."""
    if not phrases or frequency == 0:
        return None

    if frequency <= 2:
        tier = "VERY RARELY (at most 1 in 10 replies)"
    elif frequency <= 4:
        tier = "OCCASIONALLY (about 1 in 5 replies)"
    elif frequency <= 6:
        tier = "REGULARLY (about 2 in 5 replies)"
    elif frequency <= 8:
        tier = "OFTEN (about 2 in 3 replies)"
    else:
        tier = "VERY OFTEN (almost every reply)"

    listed = "\n".join(f'- "{p}"' for p in list(phrases)[:MAX_PHRASES])
    return f"Use these signature expressions {tier}:\n{listed}"


def format_examples(examples: Sequence[ExampleResponse]) -> str:
    if not examples:
        return ""
    formatted = "\n\n".join(
        f'**Situation: {ex.context}**\n"{ex.response}"' for ex in list(examples)[:MAX_EXAMPLES]
    )
    return f"## EXAMPLES OF HOW YOU ANSWER\n{formatted}"


def build_directive(resolved: ResolvedPersona) -> str:
    """Render the persona block for the system prompt."""
    base = resolved.base

    dial_lines = [
        dial_description(name, value)
        for name, value in resolved.dials.items()
        if value < NEUTRAL_LOW or value > NEUTRAL_HIGH
    ]

    parts = [f"## YOUR PERSONALITY TODAY: {base.name}"]
    if base.description:
        parts.append(f"*{base.description}*")
    parts.append("")
    parts.append("### YOUR BEHAVIOR")
    parts.append("\n".join(dial_lines) if dial_lines else "Be balanced and natural.")
    prompt = "\n".join(parts)

    phrases = phrase_instruction(base.phrases, base.phrase_frequency)
    if base.language_style or base.dialect or phrases:
        prompt += "\n\n### YOUR LANGUAGE STYLE"
        if base.language_style:
            prompt += f"\n{base.language_style}"
        if base.dialect:
            prompt += f"\n**Dialect:** Give your replies a {base.dialect} colouring."
        if phrases:
            prompt += f"\n\n{phrases}"

    examples = format_examples(base.example_responses)
    if examples:
        prompt += f"\n\n{examples}"

    ctx = resolved.context
    notes = []
    if ctx.mood in ("frustrated", "overwhelmed"):
        notes.append("The user seems frustrated or overwhelmed right now. Show extra understanding.")
    if ctx.mood == "positive":
        notes.append("The user is in a good mood. Use the momentum!")
    if ctx.time_of_day == "morning":
        notes.append("It is morning. Start the day on a motivating note.")
    if ctx.time_of_day == "night":
        notes.append("It is late. Keep it short and end the conversation on a positive note.")
    if notes:
        prompt += "\n\n### CURRENT CONTEXT\n" + "\n".join(notes)

    return prompt
