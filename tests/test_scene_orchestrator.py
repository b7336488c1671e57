"""
Tests for the style-bootstrap traversal and single-scene generation.
"""

import asyncio

import pytest

from exceptions import NoStyleAnchor
from reference_store import JobStatus, Scene
from request_builder import STYLE_REFERENCE_DIRECTIVE, ImagePart, TextPart
from scene_orchestrator import SceneOrchestrator, bootstrap_order


@pytest.fixture
def orchestrator(reference_store, image_gateway, memory_storage):
    return SceneOrchestrator(reference_store, image_gateway, memory_storage)


def _six_scenes_anchor_at_three(store):
    scenes = []
    for i in range(1, 7):
        chars = ["hero"] if i in (3, 5) else []
        scenes.append(store.add_scene(script=f"beat {i}", prompt=f"shot {i}", selected_character_ids=chars))
    return scenes


class TestBootstrapOrder:
    def test_anchor_then_before_then_after(self):
        scenes = [
            Scene(id=f"S{i}", index=i, selected_character_ids=["hero"] if i in (3, 5) else [])
            for i in range(1, 7)
        ]
        assert [s.id for s in bootstrap_order(scenes)] == ["S3", "S1", "S2", "S4", "S5", "S6"]

    def test_anchor_first_in_sequence(self):
        scenes = [Scene(id="A", index=1, selected_character_ids=["x"]), Scene(id="B", index=2)]
        assert [s.id for s in bootstrap_order(scenes)] == ["A", "B"]

    def test_no_anchor(self):
        scenes = [Scene(id="A", index=1), Scene(id="B", index=2)]
        with pytest.raises(NoStyleAnchor):
            bootstrap_order(scenes)

    def test_empty_sequence(self):
        with pytest.raises(NoStyleAnchor):
            bootstrap_order([])


class TestGenerateAll:
    @pytest.mark.asyncio
    async def test_traversal_order_and_sequential(self, orchestrator, reference_store, image_gateway):
        scenes = _six_scenes_anchor_at_three(reference_store)

        results = await orchestrator.generate_all()

        expected = [scenes[i].id for i in (2, 0, 1, 3, 4, 5)]
        assert [r.scene_id for r in image_gateway.requests] == expected
        assert [r.id for r in results] == expected
        assert image_gateway.max_in_flight == 1
        assert all(s.status == JobStatus.SUCCESS for s in reference_store.scenes)

    @pytest.mark.asyncio
    async def test_no_anchor_makes_no_calls(self, orchestrator, reference_store, image_gateway):
        reference_store.add_scene(selected_character_ids=[])
        reference_store.add_scene(selected_character_ids=[])

        with pytest.raises(NoStyleAnchor):
            await orchestrator.generate_all()
        assert image_gateway.requests == []
        assert all(s.status == JobStatus.PENDING for s in reference_store.scenes)

    @pytest.mark.asyncio
    async def test_later_scenes_reference_anchor_result(self, orchestrator, reference_store, image_gateway):
        scenes = _six_scenes_anchor_at_three(reference_store)

        await orchestrator.generate_all()

        anchor_render = f"render:{scenes[2].id}".encode()
        anchor_request = image_gateway.requests[0]
        assert TextPart(STYLE_REFERENCE_DIRECTIVE) not in anchor_request.parts
        for request in image_gateway.requests[1:]:
            assert ImagePart(anchor_render, "image/png") in request.parts
            assert TextPart(STYLE_REFERENCE_DIRECTIVE) in request.parts

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_traversal(self, orchestrator, reference_store, image_gateway):
        scenes = _six_scenes_anchor_at_three(reference_store)
        image_gateway.fail_scene_ids.add(scenes[0].id)

        await orchestrator.generate_all()

        assert len(image_gateway.requests) == 6
        by_id = {s.id: s for s in reference_store.scenes}
        failed = by_id[scenes[0].id]
        assert failed.status == JobStatus.FAILED
        assert failed.error == "503 Service Unavailable"
        assert failed.result_url is None
        assert failed.is_generating is False
        assert by_id[scenes[5].id].status == JobStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_anchor_failure_leaves_others_without_style(self, orchestrator, reference_store, image_gateway):
        scenes = _six_scenes_anchor_at_three(reference_store)
        image_gateway.fail_scene_ids.add(scenes[2].id)

        await orchestrator.generate_all()

        # scene 5 is the next character scene; scenes after it borrow its style
        s4_request = next(r for r in image_gateway.requests if r.scene_id == scenes[3].id)
        s6_request = next(r for r in image_gateway.requests if r.scene_id == scenes[5].id)
        assert TextPart(STYLE_REFERENCE_DIRECTIVE) not in s4_request.parts
        assert ImagePart(f"render:{scenes[4].id}".encode(), "image/png") in s6_request.parts

    @pytest.mark.asyncio
    async def test_overlapping_traversals_run_one_scene_at_a_time(self, orchestrator, reference_store, image_gateway):
        reference_store.add_scene(selected_character_ids=[])
        reference_store.add_scene(selected_character_ids=["hero"])
        reference_store.add_scene(selected_character_ids=[])

        await asyncio.gather(orchestrator.generate_all(), orchestrator.generate_all())

        assert image_gateway.max_in_flight == 1
        assert len(image_gateway.requests) == 6
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_single_scene_waits_for_traversal(self, orchestrator, reference_store, image_gateway):
        scenes = [reference_store.add_scene(script=f"beat {i}") for i in range(3)]

        await asyncio.gather(orchestrator.generate_all(), orchestrator.generate_scene(scenes[1].id))

        assert image_gateway.max_in_flight == 1
        assert [r.scene_id for r in image_gateway.requests][-1] == scenes[1].id
        assert len(image_gateway.requests) == 4

class TestGenerateScene:
    @pytest.mark.asyncio
    async def test_success_stores_render(self, orchestrator, reference_store, memory_storage):
        scene = reference_store.add_scene(script="arrival", prompt="train station")

        result = await orchestrator.generate_scene(scene.id)

        assert result.status == JobStatus.SUCCESS
        assert result.error is None
        assert result.is_generating is False
        assert memory_storage.files[result.result_url] == f"render:{scene.id}".encode()

    @pytest.mark.asyncio
    async def test_unknown_scene(self, orchestrator, image_gateway):
        assert await orchestrator.generate_scene("missing") is None
        assert image_gateway.requests == []

    @pytest.mark.asyncio
    async def test_reference_fetch_failure_marks_failed(self, orchestrator, reference_store, image_gateway):
        anchor = reference_store.add_scene(selected_character_ids=["hero"])
        reference_store.patch_scene(anchor.id, status=JobStatus.SUCCESS, result_url="mem://lost.png")
        target = reference_store.add_scene(selected_character_ids=[])

        result = await orchestrator.generate_scene(target.id)

        assert result.status == JobStatus.FAILED
        assert "Failed to fetch style reference image" in result.error
        assert image_gateway.requests == []

    @pytest.mark.asyncio
    async def test_missing_edit_base_marks_failed(self, orchestrator, reference_store, image_gateway):
        scene = reference_store.add_scene(selected_character_ids=[])
        reference_store.patch_scene(scene.id, status=JobStatus.SUCCESS, result_url="mem://gone.png")

        result = await orchestrator.generate_scene(scene.id, use_existing_image=True)

        assert result.status == JobStatus.FAILED
        assert result.error.startswith("Failed to fetch existing scene image (mem://gone.png)")
        assert result.is_generating is False
        assert image_gateway.requests == []

    @pytest.mark.asyncio
    async def test_regenerate_with_edit(self, orchestrator, reference_store, image_gateway, memory_storage):
        scene = reference_store.add_scene(prompt="market at noon")
        first = await orchestrator.generate_scene(scene.id)

        second = await orchestrator.generate_scene(
            scene.id, refine_prompt="same market, heavy rain", use_existing_image=True,
        )

        request = image_gateway.requests[-1]
        previous = memory_storage.files[first.result_url]
        # own previous render is both the style anchor and the edit base
        assert request.parts.count(ImagePart(previous, "image/png")) == 2
        assert 'PROMPT: "same market, heavy rain".' in request.parts[-1].text
        assert second.status == JobStatus.SUCCESS
        assert second.result_url != first.result_url
        assert reference_store.get_scene(scene.id).prompt == "market at noon"

    @pytest.mark.asyncio
    async def test_generating_flag_while_in_flight(self, reference_store, memory_storage):
        seen = {}

        class PeekingGateway:
            async def generate_image(self, request):
                current = reference_store.get_scene(request.scene_id)
                seen["status"] = current.status
                seen["is_generating"] = current.is_generating
                seen["result_url"] = current.result_url
                return ImagePart(b"png")

        orchestrator = SceneOrchestrator(reference_store, PeekingGateway(), memory_storage)
        scene = reference_store.add_scene()
        await orchestrator.generate_scene(scene.id)

        assert seen == {"status": JobStatus.RUNNING, "is_generating": True, "result_url": None}
