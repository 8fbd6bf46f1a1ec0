"""Prompt pack models, the task registry and the definitions loader."""
from __future__ import annotations

from importlib import import_module
import pkgutil
from typing import Any, Dict, Literal

from pydantic import BaseModel

PromptTask = Literal[
    "generate_questions",
    "grade_answers",
]


class PromptMeta(BaseModel):
    id: PromptTask
    description: str
    version: str = "1.0.0"


class PromptTemplates(BaseModel):
    system: str
    user: str


class PromptPack(BaseModel):
    meta: PromptMeta
    templates: PromptTemplates
    # Literal JSON shape the model must answer with; injected as {output_shape}.
    output_shape: str


class _BlankForMissing(dict):
    """Placeholders absent from the context render as empty text."""

    def __missing__(self, key: str) -> str:
        return ""


def render_prompt_template(template: str, ctx: Dict[str, Any]) -> str:
    return template.format_map(_BlankForMissing(ctx))


# One pack per task; a later registration for the same task replaces the earlier one.
PROMPT_PACKS: Dict[str, PromptPack] = {}


def register_prompt(pack: PromptPack) -> None:
    PROMPT_PACKS[pack.meta.id] = pack


def get_prompt_pack(task: PromptTask) -> PromptPack:
    load_builtin_prompts()
    try:
        return PROMPT_PACKS[task]
    except KeyError:
        raise LookupError(f"No prompt registered for task {task!r}") from None


def load_builtin_prompts() -> None:
    """Import every public module in ``definitions/``; each registers itself."""
    definitions = import_module(f"{__package__}.definitions")
    for module_info in pkgutil.iter_modules(definitions.__path__):
        if not module_info.name.startswith("_"):
            import_module(f"{definitions.__name__}.{module_info.name}")
