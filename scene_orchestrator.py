# scene_orchestrator.py
# ------------------------------------------------------------------------------------
#  generate_all() renders the whole sequence so the art style is set before
#  anything else is drawn: the first scene with characters goes first (it becomes
#  the style anchor), then every scene before it, then every scene after it.
#  Only one scene renders at a time, across generate_all() and generate_scene(),
#  because each request reads the images produced by the ones before it.
# ------------------------------------------------------------------------------------

import asyncio
from typing import List, Optional

from exceptions import NoStyleAnchor, ReferenceFetchFailed
from logging_config import get_logger
from reference_store import JobStatus, ReferenceStore, Scene
from request_builder import ImagePart, build_scene_request
from storage import scene_render_key

logger = get_logger("scene_orchestrator")


def bootstrap_order(scenes: List[Scene]) -> List[Scene]:
    """
    Traversal order for generate-all: anchor, then scenes before it, then scenes after it.

    Raises:
        NoStyleAnchor: no scene has selected characters
    """
    anchor_pos = next((i for i, s in enumerate(scenes) if s.selected_character_ids), None)
    if anchor_pos is None:
        raise NoStyleAnchor()
    return [scenes[anchor_pos]] + scenes[:anchor_pos] + scenes[anchor_pos + 1:]


class SceneOrchestrator:
    def __init__(self, store: ReferenceStore, gateway, storage):
        self.store = store
        self.gateway = gateway
        self.storage = storage
        # held for a whole traversal or a single render
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def generate_scene(
        self,
        scene_id: str,
        refine_prompt: Optional[str] = None,
        use_existing_image: bool = False,
    ) -> Optional[Scene]:
        """
        Render one scene and record the outcome on it.

        With refine_prompt and/or use_existing_image this is "regenerate with
        edit": the prompt replaces the stored one and the current render is
        sent as the edit base. Failures are recorded, never raised.
        Waits for any traversal or render already in progress.
        """
        async with self._lock:
            return await self._render(scene_id, refine_prompt, use_existing_image)

    async def _render(
        self,
        scene_id: str,
        refine_prompt: Optional[str] = None,
        use_existing_image: bool = False,
    ) -> Optional[Scene]:
        # caller holds the lock
        scene = self.store.get_scene(scene_id)
        if scene is None:
            return None

        # snapshot before the scene drops its result while running
        scenes = self.store.scenes
        characters = self.store.characters
        previous_url = scene.result_url

        self.store.patch_scene(
            scene_id, status=JobStatus.RUNNING, is_generating=True, result_url=None, error=None,
        )
        logger.info(f"Generating scene {scene.index} ({scene_id})")

        try:
            existing = None
            if use_existing_image and previous_url:
                try:
                    existing = ImagePart(data=await self.storage.load(previous_url))
                except Exception as e:
                    raise ReferenceFetchFailed(
                        previous_url, str(e) or type(e).__name__, what="existing scene image",
                    ) from e
            request = await build_scene_request(
                scene, scenes, characters, self.storage.load,
                refine_prompt=refine_prompt, existing_image=existing,
            )
            image = await self.gateway.generate_image(request)
            url = self.storage.save(image.data, scene_render_key(scene_id), image.mime_type)
        except Exception as e:
            logger.error(f"Scene {scene.index} failed: {e}")
            return self.store.patch_scene(
                scene_id,
                status=JobStatus.FAILED,
                error=str(e) or "An unknown error occurred.",
                result_url=None,
                is_generating=False,
            )

        logger.info(f"Scene {scene.index} done -> {url}")
        return self.store.patch_scene(
            scene_id, status=JobStatus.SUCCESS, result_url=url, error=None, is_generating=False,
        )

    async def generate_all(self) -> List[Scene]:
        """
        Render every scene in bootstrap order, one at a time.

        Raises:
            NoStyleAnchor: before any request is made, when no scene has characters
        """
        async with self._lock:
            order = bootstrap_order(self.store.scenes)
            logger.info(f"Generate all: {len(order)} scenes, anchor is scene {order[0].index}")

            results = []
            for scene in order:
                outcome = await self._render(scene.id)
                # a scene removed mid-run is skipped
                if outcome is not None:
                    results.append(outcome)
            return results
