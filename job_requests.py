# job_requests.py
# ------------------------------------------------------------------------------------
#  Turns a bulk form submission (one prompt, or a CSV column of prompts) into
#  JobDrafts. Each prompt is expanded with the character roster and an optional
#  scene context before it is frozen into the job.
# ------------------------------------------------------------------------------------

import csv
import io
from typing import List, Optional

from exceptions import InvalidJobRequest
from job_store import InputType, JobDraft
from reference_store import Character

CREATIVE_CONTEXT_SUFFIX = (
    " (AI should use this context image as inspiration to create new contexts "
    "from different perspectives, suitable for the prompt)."
)


def defined_characters(characters: List[Character]) -> List[Character]:
    return [c for c in characters if c.images]


def character_context(characters: List[Character]) -> str:
    parts = []
    for c in defined_characters(characters):
        if not c.name:
            continue
        style = c.style_description.strip()
        parts.append(f"{c.name}: {style}" if style else c.name)
    return "; ".join(parts)


def build_final_prompt(
    base_prompt: str,
    characters: List[Character],
    context_prompt: str = "",
    creative_context: bool = False,
) -> str:
    """Prefix the prompt with the character roster and scene context, when there are any."""
    context_parts = []
    roster = character_context(characters)
    if roster:
        context_parts.append(f"Reference characters: [{roster}]")
    if context_prompt.strip():
        description = f"Scene context: [{context_prompt.strip()}]"
        if creative_context:
            description += CREATIVE_CONTEXT_SUFFIX
        context_parts.append(description)

    if context_parts:
        return f"{'. '.join(context_parts)}. \n\n{base_prompt}"
    return base_prompt


def prompts_from_csv(text: str, column: str) -> List[str]:
    """Non-empty values of one named column, in row order."""
    column = column.strip()
    if not column:
        raise InvalidJobRequest("Please specify the prompt column name from your CSV.")

    rows = [row for row in text.splitlines() if row.strip()]
    if len(rows) < 2:
        raise InvalidJobRequest("CSV file must have a header and at least one data row.")

    reader = csv.reader(io.StringIO("\n".join(rows)))
    header = [h.strip() for h in next(reader)]
    if column not in header:
        raise InvalidJobRequest(
            f"Column '{column}' not found in CSV header. Found: {', '.join(header)}"
        )
    idx = header.index(column)

    prompts = []
    for values in reader:
        value = values[idx].strip() if idx < len(values) else ""
        if value:
            prompts.append(value)
    if not prompts:
        raise InvalidJobRequest("No valid jobs with non-empty prompts found in the specified column.")
    return prompts


def build_job_drafts(
    prompts: List[str],
    characters: List[Character],
    selected: Optional[Character],
    input_type: InputType,
    model: str,
    aspect_ratio: str,
    output_count: int = 1,
    context_prompt: str = "",
    creative_context: bool = False,
) -> List[JobDraft]:
    """
    One draft per non-empty prompt, all sharing the same parameters and seed image.

    Raises:
        InvalidJobRequest: no usable prompt, or image input without a selected
            character that has an image
    """
    prompts = [p for p in prompts if p and p.strip()]
    if not prompts:
        raise InvalidJobRequest("Prompt cannot be empty.")

    seed = None
    if input_type == InputType.IMAGE:
        if selected is None or not selected.images:
            raise InvalidJobRequest(
                "For Image-to-Video, please select a reference character with an uploaded image."
            )
        seed = selected.images[0]

    names = [c.name for c in defined_characters(characters)]
    return [
        JobDraft(
            prompt=build_final_prompt(p, characters, context_prompt, creative_context),
            input_type=input_type,
            model=model,
            aspect_ratio=aspect_ratio,
            output_count=output_count,
            image_data=seed.data if seed else None,
            image_mime_type=seed.mime_type if seed else None,
            reference_character_names=names,
        )
        for p in prompts
    ]
