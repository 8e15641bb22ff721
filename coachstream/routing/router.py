"""
Model Router

Classifies a message into a task type and picks provider + model for it.
Rules are checked in priority order, first match wins:

    images -> vision
    research keywords -> research (perplexity deep research)
    tool flag / tool keywords -> tools
    complexity keywords / complexity score -> analysis
    otherwise chat: fast model for short early-conversation messages,
    standard model for everything else

Fallback chains are fixed per primary provider. When a chain moves to a
provider other than the primary, that provider's configured fallback model
replaces the primary's model.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..context.signals import ConversationAnalysis, optimal_model_for_analysis
from ..core.config import ProviderConfig, RouterConfig

logger = logging.getLogger(__name__)

RESEARCH_TRIGGERS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bstud(y|ies)\b",
        r"research",
        r"pubmed",
        r"\bevidence\b",
        r"\bscien(ce|tific)\b",
        r"\bpaper\b",
        r"meta-analys[ie]s",
        r"clinical trial",
        r"peptide.*research",
        r"according to.*research",
        r"what does the science say",
        r"are there (any )?studies",
        r"latest.*findings",
    )
]

TOOL_TRIGGERS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\b(create|generate|calculate|analy[sz]e|show|plan)\b.*\b(plan|workout|nutrition|recipe|bloodwork)",
        r"\bmy\b.*\b(weight|calories|macros|progress)\b",
        r"\b(track|log|save)\b",
        r"how (much|many).*(protein|kcal|calories)",
    )
]

COMPLEX_TRIGGERS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"explain.*detail",
        r"why exactly",
        r"\bcompar",
        r"difference.*between",
        r"optimi[sz]",
        r"strateg",
        r"long[- ]term",
        r"periodi[sz]ation",
    )
]

TASK_TYPES = ("chat", "research", "tools", "analysis", "vision")


@dataclass(frozen=True)
class ModelChoice:
    provider: str
    model: str
    reason: str
    task_type: str = "chat"

    def to_dict(self) -> Dict[str, str]:
        return {
            "provider": self.provider,
            "model": self.model,
            "reason": self.reason,
            "taskType": self.task_type,
        }


@dataclass
class RoutingContext:
    has_images: bool = False
    complexity: Optional[float] = None
    requires_tools: bool = False
    message_length: Optional[int] = None
    conversation_length: int = 0


class ModelRouter:
    """Task classification, model selection and fallback chains."""

    def __init__(self, settings: RouterConfig, providers: Dict[str, ProviderConfig]):
        self.settings = settings
        self.providers = providers
        for name in (settings.default_provider, settings.research_provider):
            if name not in providers:
                raise ValueError(f"Router provider '{name}' is not configured")

    def detect_task_type(self, text: str, ctx: Optional[RoutingContext] = None) -> str:
        ctx = ctx or RoutingContext()
        if ctx.has_images:
            return "vision"
        if any(t.search(text) for t in RESEARCH_TRIGGERS):
            return "research"
        if ctx.requires_tools or any(t.search(text) for t in TOOL_TRIGGERS):
            return "tools"
        if any(t.search(text) for t in COMPLEX_TRIGGERS) or (
            ctx.complexity is not None and ctx.complexity > self.settings.complexity_threshold
        ):
            return "analysis"
        return "chat"

    def classify(self, text: str, ctx: Optional[RoutingContext] = None) -> ModelChoice:
        ctx = ctx or RoutingContext()
        task = self.detect_task_type(text, ctx)
        s = self.settings

        if task == "research":
            choice = ModelChoice(s.research_provider, s.research_model,
                                 "Research query, deep research model", task)
        elif task == "tools":
            choice = ModelChoice(s.default_provider, s.standard_model,
                                 "Tool execution, standard model for function calling", task)
        elif task == "vision":
            choice = ModelChoice(s.default_provider, s.standard_model,
                                 "Image analysis, standard model for vision", task)
        elif task == "analysis":
            choice = ModelChoice(s.default_provider, s.standard_model,
                                 "Complex analysis, standard model for reasoning", task)
        else:
            length = ctx.message_length if ctx.message_length is not None else len(text)
            if length < s.fast_max_chars and ctx.conversation_length < s.fast_max_conversation:
                choice = ModelChoice(s.default_provider, s.fast_model, "Simple chat, fast model", task)
            else:
                choice = ModelChoice(s.default_provider, s.standard_model, "Standard chat", task)

        logger.info(f"[ROUTER] {choice.task_type} -> {choice.provider}/{choice.model} ({choice.reason})")
        return choice

    def fallback_chain(self, primary: str) -> List[str]:
        """Ordered providers to try, starting with the primary."""
        chain = self.settings.fallback_chains.get(primary)
        if not chain:
            chain = [primary] if primary == self.settings.default_provider else [primary, self.settings.default_provider]
        return [p for p in dict.fromkeys(chain) if p in self.providers]

    def model_for(self, provider: str, choice: ModelChoice) -> str:
        """The model to request from `provider` when serving `choice`."""
        if provider == choice.provider:
            return choice.model
        fallback = self.providers[provider].fallback_model
        if fallback:
            return fallback
        return choice.model

    def apply_analysis(
        self,
        choice: ModelChoice,
        analysis: Optional[ConversationAnalysis],
    ) -> Tuple[ModelChoice, Optional[int]]:
        """Let the conversation analysis override the choice for very short or very deep replies.

        Returns:
            (choice, max_tokens recommended by the analysis or None)
        """
        if analysis is None:
            return choice, None

        short = analysis.intent in ("confirmation", "chit_chat") or analysis.required_detail_level == "ultra_short"
        deep = analysis.intent == "deep_dive" or analysis.required_detail_level == "extensive"
        if not (short or deep):
            return choice, None

        recommended = optimal_model_for_analysis(
            analysis,
            flash_model=self.providers[self.settings.default_provider].fallback_model or self.settings.fast_model,
            pro_model=self.settings.standard_model,
        )
        overridden = ModelChoice(
            provider=self.settings.default_provider,
            model=recommended.model,
            reason=f"Semantic: {recommended.reason}",
            task_type=choice.task_type,
        )
        logger.info(f"[ROUTER] Semantic override -> {overridden.model} (max_tokens={recommended.max_tokens})")
        return overridden, recommended.max_tokens
