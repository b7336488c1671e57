# request_builder.py
# ------------------------------------------------------------------------------------
#  Scene request assembly. Bundles everything the image model needs to keep a
#  scene consistent with the rest of the sequence: the characters' identity
#  images, the style anchor's rendered image, an optional edit base, and the
#  story context. The order of the parts is what the model sees:
#
#    identity images + identity text  ->  style reference  ->  edit base  ->  instructions
# ------------------------------------------------------------------------------------

from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Union

from exceptions import ReferenceFetchFailed
from logging_config import get_logger
from reference_store import Character, Scene

logger = get_logger("request_builder")

STORY_CONTEXT_WINDOW = 3

STYLE_REFERENCE_DIRECTIVE = (
    "STYLE REFERENCE: Maintain the exact artistic style, brushwork, lighting, "
    "and color palette from this previous image."
)
ENVIRONMENT_DIRECTIVE = (
    "ENVIRONMENTAL CONSISTENCY:\n"
    "If the setting is the same as the previous scenes, maintain all architectural "
    "and environmental details.\n"
    "However, use a NEW camera angle and composition to keep it visually diverse."
)
RULES = "RULES: Cinematic quality, consistent lighting/color with style reference. NO TEXT or labels."

ImageLoader = Callable[[str], Awaitable[bytes]]


@dataclass
class ImagePart:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class TextPart:
    text: str


Part = Union[ImagePart, TextPart]


@dataclass
class GenerationRequest:
    """Ordered parts for one image generation call."""
    scene_id: str
    parts: List[Part] = field(default_factory=list)


def find_style_anchor(scenes: List[Scene]) -> Optional[Scene]:
    """First scene in sequence order with both a rendered result and characters."""
    return next((s for s in scenes if s.result_url and s.selected_character_ids), None)


def selected_characters(scene: Scene, characters: List[Character]) -> List[Character]:
    by_id = {c.id: c for c in characters}
    return [by_id[cid] for cid in scene.selected_character_ids if cid in by_id]


def preceding_scenes(scene: Scene, scenes: List[Scene]) -> List[Scene]:
    position = next((i for i, s in enumerate(scenes) if s.id == scene.id), len(scenes))
    return scenes[max(0, position - STORY_CONTEXT_WINDOW):position]


def build_instruction_text(
    scene: Scene,
    scenes: List[Scene],
    chars: List[Character],
    refine_prompt: Optional[str] = None,
) -> str:
    if chars:
        names = ", ".join(c.name for c in chars)
        character_directive = f"Ensure {names} appear exactly as the references. Integrate them naturally."
    else:
        character_directive = (
            "DO NOT include any of the main characters in this shot unless explicitly "
            "mentioned. Focus on the environment."
        )

    previous = " -> ".join(s.script for s in preceding_scenes(scene, scenes))
    story_context = (
        "STORY CONTEXT:\n"
        f"Previous actions: {previous}\n"
        f'Current scene: "{scene.script}"'
    )

    prompt = refine_prompt or scene.prompt
    return "\n\n".join([
        character_directive,
        story_context,
        ENVIRONMENT_DIRECTIVE,
        f'PROMPT: "{prompt}".',
        RULES,
    ])


async def build_scene_request(
    scene: Scene,
    scenes: List[Scene],
    characters: List[Character],
    load_image: ImageLoader,
    refine_prompt: Optional[str] = None,
    existing_image: Optional[ImagePart] = None,
) -> GenerationRequest:
    """
    Assemble the generation request for one scene.

    Args:
        scene: The scene to render
        scenes: The full sequence, used for the style anchor and story context
        characters: All known characters
        load_image: Resolves a stored result URL to image bytes
        refine_prompt: Replaces the scene prompt for "regenerate with edit"
        existing_image: Previously rendered image to edit from

    Raises:
        ReferenceFetchFailed: the style anchor's image could not be loaded
    """
    request = GenerationRequest(scene_id=scene.id)
    chars = selected_characters(scene, characters)

    for char in chars:
        for img in char.images:
            request.parts.append(ImagePart(data=img.data, mime_type=img.mime_type))
        request.parts.append(TextPart(f"Character {char.name} Identity: {char.style_description}"))

    # style continuity is global: applies even when this scene has its own characters
    anchor = find_style_anchor(scenes)
    if anchor is not None:
        try:
            anchor_bytes = await load_image(anchor.result_url)
        except Exception as e:
            raise ReferenceFetchFailed(anchor.result_url, str(e) or type(e).__name__) from e
        logger.debug(f"Scene {scene.index}: style anchor is scene {anchor.index}")
        request.parts.append(ImagePart(data=anchor_bytes, mime_type="image/png"))
        request.parts.append(TextPart(STYLE_REFERENCE_DIRECTIVE))

    if existing_image is not None:
        request.parts.append(existing_image)

    request.parts.append(TextPart(build_instruction_text(scene, scenes, chars, refine_prompt)))
    return request
