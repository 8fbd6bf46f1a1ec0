"""Question generation prompt."""
from prompt_packs.core import (
    PromptMeta,
    PromptPack,
    PromptTemplates,
    register_prompt,
)

register_prompt(
    PromptPack(
        meta=PromptMeta(
            id="generate_questions",
            description="Comprehension questions with a short rubric, grounded in one chapter's notes.",
            version="1.0.0",
        ),
        output_shape='{"questions":[{"id":"q1","question":"...","rubric":"..."}]}',
        templates=PromptTemplates(
            system=(
                "You are a reading comprehension coach. Return strict JSON only. "
                "Do not include markdown, commentary, or code fences."
            ),
            user=(
                "Create chapter questions from the provided context.\n"
                "Requirements:\n"
                "- Return exactly {count} questions.\n"
                "- Difficulty: {difficulty}.\n"
                "- Style: {style}.\n"
                "- Make each question specific to the chapter context.\n"
                "- Keep each question <= 220 characters.\n"
                "- Provide a short grading rubric for each question.\n"
                "- Output JSON in this shape only: {output_shape}\n"
                "\n"
                "{book_block}\n"
                "{chapter_block}"
            ),
        ),
    )
)
