"""
Tests for hierarchical lazy loading: parent first, children on demand.
"""
import asyncio
import logging

import pytest

from courseloader.cache import Tier
from courseloader.loading import CollectionState, HierarchicalLazyLoader


# =============================================================================
# Test Fixtures (Mock Data)
# =============================================================================

class FakeCourseApi:
    """Remote data source stand-in that counts every call."""

    def __init__(self):
        self.course = {"id": 7, "title": "Databases", "version": 1}
        self.modules = [
            {"id": 1, "title": "Modeling"},
            {"id": 2, "title": "SQL"},
            {"id": 3, "title": "Indexes"},
        ]
        self.course_calls = 0
        self.module_calls = 0
        self.lesson_calls = []
        self.failing_modules = set()
        self.gate = None

    async def get_course(self):
        self.course_calls += 1
        return dict(self.course)

    async def list_modules(self, course):
        self.module_calls += 1
        return [dict(m) for m in self.modules]

    async def list_lessons(self, module_id):
        self.lesson_calls.append(module_id)
        if self.gate is not None:
            await self.gate.wait()
        if module_id in self.failing_modules:
            raise ConnectionError(f"lessons for module {module_id} unavailable")
        return {"lessons": [f"lesson-{module_id}-a", f"lesson-{module_id}-b"]}


@pytest.fixture
def api():
    return FakeCourseApi()


def make_loader(api, registry, **kwargs):
    return HierarchicalLazyLoader(
        registry,
        parent_key="course-7",
        fetch_parent=api.get_course,
        fetch_children=api.list_modules,
        fetch_detail=api.list_lessons,
        **kwargs,
    )


# =============================================================================
# Parent and collection tiers
# =============================================================================

@pytest.mark.asyncio
async def test_parent_renders_before_children(api, registry):
    snapshots = []
    loader = make_loader(
        api,
        registry,
        on_update=lambda view: snapshots.append((view.parent, list(view.children))),
    )

    view = await loader.open()

    assert snapshots[0] == (api.course, [])
    assert [m["id"] for m in view.children] == [1, 2, 3]
    assert api.lesson_calls == []


@pytest.mark.asyncio
async def test_each_tier_is_cached_under_its_own_key(api, registry):
    loader = make_loader(api, registry)
    await loader.open()
    await loader.expand(2)

    assert registry.has("course-7")
    assert registry.has("course-7-children")
    assert registry.has("course-7-child-2")
    assert not registry.has("course-7-child-1")


@pytest.mark.asyncio
async def test_reopening_uses_cache_for_every_tier(api, registry):
    first = make_loader(api, registry)
    await first.open()
    await first.expand(1)

    second = make_loader(api, registry)
    view = await second.open()
    await second.expand(1)

    assert (api.course_calls, api.module_calls, api.lesson_calls) == (1, 1, [1])
    assert view.children[0]["lessons"] == ["lesson-1-a", "lesson-1-b"]


@pytest.mark.asyncio
async def test_collection_fingerprint_invalidates_changed_parent(api, registry):
    def fingerprint(course):
        return [course["id"], course["version"]]

    await make_loader(api, registry, collection_fingerprint=fingerprint).open()
    assert registry.has("course-7-children-deps")

    # The parent record changed shape upstream
    registry.set("course-7", {**api.course, "version": 2})
    await make_loader(api, registry, collection_fingerprint=fingerprint).open()
    assert api.module_calls == 2

    await make_loader(api, registry, collection_fingerprint=fingerprint).open()
    assert api.module_calls == 2


@pytest.mark.asyncio
async def test_parent_failure_is_logged_and_raised(api, registry, caplog):
    async def broken():
        raise RuntimeError("course not found")

    loader = HierarchicalLazyLoader(
        registry,
        parent_key="course-404",
        fetch_parent=broken,
        fetch_children=api.list_modules,
        fetch_detail=api.list_lessons,
    )

    with caplog.at_level(logging.ERROR, logger="loading.hierarchical"):
        with pytest.raises(RuntimeError):
            await loader.open()

    assert "course-404" in caplog.text
    assert not registry.has("course-404")


# =============================================================================
# Detail tier
# =============================================================================

@pytest.mark.asyncio
async def test_expand_merges_detail_at_child_position(api, registry):
    loader = make_loader(api, registry)
    await loader.open()

    detail = await loader.expand(2)

    assert detail == {"lessons": ["lesson-2-a", "lesson-2-b"]}
    assert loader.view.children[1] == {
        "id": 2,
        "title": "SQL",
        "lessons": ["lesson-2-a", "lesson-2-b"],
    }
    assert "lessons" not in loader.view.children[0]
    assert loader.state_of(2) is CollectionState.LOADED
    assert loader.is_loaded(2)


@pytest.mark.asyncio
async def test_rapid_double_expand_fetches_once(api, registry):
    api.gate = asyncio.Event()
    loader = make_loader(api, registry)
    await loader.open()

    first = asyncio.create_task(loader.expand(1))
    second = asyncio.create_task(loader.expand(1))
    await asyncio.sleep(0)
    assert loader.state_of(1) is CollectionState.LOADING

    api.gate.set()
    results = await asyncio.gather(first, second)

    assert api.lesson_calls == [1]
    assert results[0] == results[1]


@pytest.mark.asyncio
async def test_collapse_and_reexpand_does_not_refetch(api, registry):
    loader = make_loader(api, registry)
    await loader.open()

    await loader.expand(3)
    loader.collapse(3)
    assert not loader.is_expanded(3)
    assert "lessons" in loader.view.children[2]

    await loader.toggle(3)
    assert loader.is_expanded(3)
    await loader.toggle(3)
    await loader.expand(3)

    assert api.lesson_calls == [3]


@pytest.mark.asyncio
async def test_failed_expand_reverts_to_unloaded_and_retries_next_time(api, registry, caplog):
    api.failing_modules.add(2)
    loader = make_loader(api, registry)
    await loader.open()

    with caplog.at_level(logging.WARNING, logger="loading.hierarchical"):
        assert await loader.expand(2) is None

    assert loader.state_of(2) is CollectionState.UNLOADED
    assert isinstance(loader.errors[2], ConnectionError)
    assert not loader.is_loaded(2)
    assert "course-7-child-2" in caplog.text
    assert api.lesson_calls == [2]

    api.failing_modules.clear()
    assert await loader.expand(2) is not None
    assert api.lesson_calls == [2, 2]
    assert loader.state_of(2) is CollectionState.LOADED
    assert 2 not in loader.errors


@pytest.mark.asyncio
async def test_failed_expand_collapses_so_toggle_retries(api, registry):
    api.failing_modules.add(1)
    loader = make_loader(api, registry)
    await loader.open()

    assert await loader.expand(1) is None
    assert not loader.is_expanded(1)

    api.failing_modules.clear()
    detail = await loader.toggle(1)

    assert detail == {"lessons": ["lesson-1-a", "lesson-1-b"]}
    assert api.lesson_calls == [1, 1]
    assert loader.is_expanded(1)


@pytest.mark.asyncio
async def test_expired_detail_stays_merged_for_the_session(api, registry, clock):
    loader = make_loader(api, registry, ttls={Tier.DETAIL: 10})
    await loader.open()
    await loader.expand(1)

    clock.advance(11)

    assert loader.is_loaded(1)
    assert not loader.is_fresh(1)
    await loader.expand(1)
    assert api.lesson_calls == [1]
    assert loader.view.children[0]["lessons"] == ["lesson-1-a", "lesson-1-b"]


@pytest.mark.asyncio
async def test_expand_before_collection_merges_when_list_arrives(api, registry):
    loader = make_loader(api, registry)
    await loader.load_parent()

    await loader.expand(3)
    assert loader.view.children == []

    await loader.load_collection()
    assert loader.view.children[2]["lessons"] == ["lesson-3-a", "lesson-3-b"]


@pytest.mark.asyncio
async def test_custom_merge_and_child_id(api, registry):
    loader = make_loader(
        api,
        registry,
        child_id=lambda module: module["id"],
        merge=lambda module, detail: {**module, "lesson_count": len(detail["lessons"])},
    )
    await loader.open()
    await loader.expand(1)

    assert loader.view.children[0]["lesson_count"] == 2


@pytest.mark.asyncio
async def test_without_registry_nothing_is_cached(api):
    await make_loader(api, None).open()
    loader = make_loader(api, None)
    await loader.open()
    await loader.expand(1)

    assert api.course_calls == 2
    assert api.module_calls == 2
    assert loader.is_loaded(1)
    assert not loader.is_fresh(1)


# =============================================================================
# Refresh and teardown
# =============================================================================

@pytest.mark.asyncio
async def test_refresh_child_clears_cache_and_session_flag(api, registry):
    loader = make_loader(api, registry)
    await loader.open()
    await loader.expand(1)

    await loader.refresh(1)

    assert api.lesson_calls == [1, 1]
    assert loader.is_loaded(1)
    assert loader.is_fresh(1)


@pytest.mark.asyncio
async def test_failed_child_refresh_drops_stale_detail_from_view(api, registry):
    loader = make_loader(api, registry)
    await loader.open()
    await loader.expand(2)
    assert "lessons" in loader.view.children[1]

    api.failing_modules.add(2)
    assert await loader.refresh(2) is None

    assert loader.view.children[1] == {"id": 2, "title": "SQL"}
    assert loader.state_of(2) is CollectionState.UNLOADED
    assert isinstance(loader.errors[2], ConnectionError)
    assert registry.get("course-7-children")[1] == {"id": 2, "title": "SQL"}


@pytest.mark.asyncio
async def test_refresh_collapsed_child_only_clears(api, registry):
    loader = make_loader(api, registry)
    await loader.open()
    await loader.expand(1)
    loader.collapse(1)

    assert await loader.refresh(1) is None

    assert not loader.is_loaded(1)
    assert "lessons" not in loader.view.children[0]
    assert not loader.is_fresh(1)
    assert loader.state_of(1) is CollectionState.UNLOADED
    assert api.lesson_calls == [1]


@pytest.mark.asyncio
async def test_full_refresh_reloads_every_tier(api, registry):
    loader = make_loader(api, registry)
    await loader.open()
    await loader.expand(2)

    api.modules.append({"id": 4, "title": "Transactions"})
    view = await loader.refresh()

    assert (api.course_calls, api.module_calls, api.lesson_calls) == (2, 2, [2, 2])
    assert [m["id"] for m in view.children] == [1, 2, 3, 4]
    assert view.children[1]["lessons"] == ["lesson-2-a", "lesson-2-b"]
    assert loader.is_expanded(2)


@pytest.mark.asyncio
async def test_detach_cancels_in_flight_expand(api, registry):
    api.gate = asyncio.Event()
    updates = []
    loader = make_loader(api, registry)
    await loader.open()
    loader.on_update = updates.append

    pending = asyncio.create_task(loader.expand(1))
    await asyncio.sleep(0)
    loader.detach()
    api.gate.set()

    assert await pending is None
    assert loader.state_of(1) is CollectionState.UNLOADED
    assert not loader.is_loaded(1)
    assert "lessons" not in loader.view.children[0]
    assert not registry.has("course-7-child-1")
    assert updates == []
