# reference_store.py
import threading
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from exceptions import ReferenceLimitExceeded, UnknownCharacter

MAX_CHARACTER_IMAGES = 5

# Fields a caller may merge-patch; ids, indices and image lists have their own operations.
CHARACTER_FIELDS = {"name", "style_description", "prompt"}
SCENE_FIELDS = {
    "script", "prompt", "selected_character_ids",
    "status", "result_url", "error", "is_generating",
}


def _new_id() -> str:
    return uuid.uuid4().hex[:9]


class JobStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class CharacterImage(BaseModel):
    id: str = Field(default_factory=_new_id)
    data: bytes
    mime_type: str = "image/png"


class Character(BaseModel):
    id: str
    name: str
    style_description: str = ""
    images: List[CharacterImage] = Field(default_factory=list)
    is_default: bool = False
    # bulk video flow: the selected character seeds image-to-video jobs
    is_selected: bool = False
    prompt: str = ""


class Scene(BaseModel):
    id: str = Field(default_factory=_new_id)
    index: int
    script: str = ""
    prompt: str = ""
    selected_character_ids: List[str] = Field(default_factory=list)  # empty = environment-only shot
    status: JobStatus = JobStatus.PENDING
    result_url: Optional[str] = None
    error: Optional[str] = None
    is_generating: bool = False


def placeholder_characters() -> List[Character]:
    return [
        Character(id="char1", name="Character 1", is_default=True),
        Character(id="char2", name="Character 2"),
        Character(id="char3", name="Character 3"),
    ]


def _dedupe(ids: List[str]) -> List[str]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class ReferenceStore:
    """
    Owns the characters and the ordered scene sequence.

    Entities are replaced, never mutated in place: every patch swaps in a
    copy, so a list returned earlier keeps describing the state it was read from.
    """

    def __init__(self, characters: Optional[List[Character]] = None):
        chars = placeholder_characters() if characters is None else characters
        self._characters: Dict[str, Character] = {c.id: c for c in chars}
        self._scenes: List[Scene] = []
        self._lock = threading.Lock()

    # ---------- Characters ----------
    @property
    def characters(self) -> List[Character]:
        with self._lock:
            return list(self._characters.values())

    def get_character(self, character_id: str) -> Optional[Character]:
        with self._lock:
            return self._characters.get(character_id)

    def default_character(self) -> Optional[Character]:
        return next((c for c in self.characters if c.is_default), None)

    def selected_character(self) -> Optional[Character]:
        return next((c for c in self.characters if c.is_selected), None)

    def patch_character(self, character_id: str, **fields) -> Optional[Character]:
        unknown = set(fields) - CHARACTER_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch character fields: {sorted(unknown)}")
        with self._lock:
            char = self._characters.get(character_id)
            if not char:
                return None
            if fields:
                char = char.model_copy(update=fields)
                self._characters[character_id] = char
            return char

    def set_default_character(self, character_id: str) -> Optional[Character]:
        """Make one character the default and clear the flag on all others."""
        with self._lock:
            if character_id not in self._characters:
                return None
            for cid, char in self._characters.items():
                self._characters[cid] = char.model_copy(update={"is_default": cid == character_id})
            return self._characters[character_id]

    def select_character(self, character_id: str) -> Optional[Character]:
        with self._lock:
            if character_id not in self._characters:
                return None
            for cid, char in self._characters.items():
                self._characters[cid] = char.model_copy(update={"is_selected": cid == character_id})
            return self._characters[character_id]

    def add_character_image(self, character_id: str, data: bytes, mime_type: str) -> Optional[CharacterImage]:
        with self._lock:
            char = self._characters.get(character_id)
            if not char:
                return None
            if len(char.images) >= MAX_CHARACTER_IMAGES:
                raise ReferenceLimitExceeded(character_id, MAX_CHARACTER_IMAGES)
            image = CharacterImage(data=data, mime_type=mime_type)
            self._characters[character_id] = char.model_copy(update={"images": [*char.images, image]})
            return image

    def remove_character_image(self, character_id: str, image_id: str) -> bool:
        with self._lock:
            char = self._characters.get(character_id)
            if not char:
                return False
            images = [img for img in char.images if img.id != image_id]
            if len(images) == len(char.images):
                return False
            self._characters[character_id] = char.model_copy(update={"images": images})
            return True

    def _known_ids(self, ids: List[str]) -> List[str]:
        # caller holds the lock
        unknown = [i for i in ids if i not in self._characters]
        if unknown:
            raise UnknownCharacter(_dedupe(unknown))
        return _dedupe(ids)

    # ---------- Scenes ----------
    @property
    def scenes(self) -> List[Scene]:
        with self._lock:
            return list(self._scenes)

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        with self._lock:
            return next((s for s in self._scenes if s.id == scene_id), None)

    def add_scene(self, script: str = "", prompt: str = "",
                  selected_character_ids: Optional[List[str]] = None) -> Scene:
        """
        Append a scene at the tail; it starts with the default character when none are given.

        Raises:
            UnknownCharacter: a selected id matches no character
        """
        if selected_character_ids is None:
            default = self.default_character()
            selected_character_ids = [default.id] if default else []
        with self._lock:
            scene = Scene(
                index=len(self._scenes) + 1,
                script=script,
                prompt=prompt,
                selected_character_ids=self._known_ids(selected_character_ids),
            )
            self._scenes.append(scene)
            return scene

    def remove_scene(self, scene_id: str) -> bool:
        with self._lock:
            remaining = [s for s in self._scenes if s.id != scene_id]
            if len(remaining) == len(self._scenes):
                return False
            self._scenes = [
                s if s.index == pos else s.model_copy(update={"index": pos})
                for pos, s in enumerate(remaining, start=1)
            ]
            return True

    def patch_scene(self, scene_id: str, **fields) -> Optional[Scene]:
        unknown = set(fields) - SCENE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch scene fields: {sorted(unknown)}")
        with self._lock:
            if "selected_character_ids" in fields:
                fields["selected_character_ids"] = self._known_ids(fields["selected_character_ids"])
            for pos, scene in enumerate(self._scenes):
                if scene.id == scene_id:
                    if fields:
                        scene = scene.model_copy(update=fields)
                        self._scenes[pos] = scene
                    return scene
            return None
