"""Prompt templates for the coach endpoints, loaded from ``definitions/``."""
from .core import PromptPack, get_prompt_pack, load_builtin_prompts, render_prompt_template

load_builtin_prompts()

__all__ = ["PromptPack", "get_prompt_pack", "render_prompt_template"]
