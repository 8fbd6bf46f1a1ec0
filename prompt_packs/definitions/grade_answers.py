"""Answer grading prompt."""
from prompt_packs.core import (
    PromptMeta,
    PromptPack,
    PromptTemplates,
    register_prompt,
)

register_prompt(
    PromptPack(
        meta=PromptMeta(
            id="grade_answers",
            description="Scores student answers 0-100 with feedback and an ideal answer.",
            version="1.0.0",
        ),
        output_shape='{"results":[{"questionId":"...","score":0,"feedback":"...","idealAnswer":"..."}]}',
        templates=PromptTemplates(
            system=(
                "You grade student reading answers. Return strict JSON only. "
                "No markdown. Be specific and constructive."
            ),
            user=(
                "Grade each answer based on chapter context and the question asked.\n"
                "Requirements:\n"
                "- Score each answer from 0 to 100.\n"
                "- Use higher scores for accuracy, completeness, and reasoning.\n"
                "- Feedback should be concise and actionable.\n"
                "- Provide an ideal answer (2-4 sentences).\n"
                "- Output JSON only in this shape: {output_shape}\n"
                "\n"
                "{book_block}\n"
                "{chapter_block}\n"
                "\n"
                "Answers:\n"
                "{answers_block}"
            ),
        ),
    )
)
