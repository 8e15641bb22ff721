"""System prompt assembly."""

from .assembler import PromptBudgets, PromptInputs, assemble, format_time_ago

__all__ = ["PromptBudgets", "PromptInputs", "assemble", "format_time_ago"]
