import asyncio

import pytest

from exceptions import Conflict, Forbidden, NotFound, ValidationFailed
from pagination import PageRequest
from tests.conftest import refreshed

TITLE = "Original title"
CONTENT = "Original thread body text"


async def test_new_thread_starts_at_version_one_without_history(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)

    assert thread.current_version == 1
    assert thread.author_id == alice.id
    assert await forum.list_thread_history(thread.thread_id) == []


async def test_each_edit_bumps_version_and_snapshots_pre_edit_state(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    for n in range(1, 4):
        thread = await forum.edit_thread(thread.thread_id, alice, {"content": f"Body revision {n} text"})

    assert thread.current_version == 4
    history = await forum.list_thread_history(thread.thread_id)
    assert [record.version for record in history] == [1, 2, 3]
    assert [record.content for record in history] == [CONTENT, "Body revision 1 text", "Body revision 2 text"]
    assert all(record.editor_id == alice.id for record in history)


async def test_three_versions_scenario(forum, alice):
    thread = await forum.create_thread(alice, "Title v1", CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Title v2"})
    thread = await forum.edit_thread(thread.thread_id, alice, {"title": "Title v3"})

    assert thread.current_version == 3
    assert thread.title == "Title v3"
    first = await forum.get_thread_version(thread.thread_id, 1)
    assert first.title == "Title v1"
    assert (await forum.get_thread_version(thread.thread_id, 2)).title == "Title v2"
    with pytest.raises(NotFound):
        await forum.get_thread_version(thread.thread_id, 3)


async def test_versions_out_of_range_are_not_found(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Changed title"})

    for version in (0, -1, 2, 99):
        with pytest.raises(NotFound):
            await forum.get_thread_version(thread.thread_id, version)


async def test_history_listing_is_idempotent(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Second title"})
    await forum.edit_thread(thread.thread_id, alice, {"title": "Third title"})

    first = await forum.list_thread_history(thread.thread_id)
    second = await forum.list_thread_history(thread.thread_id)
    assert first == second


async def test_omitted_fields_keep_their_value(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    thread = await forum.edit_thread(thread.thread_id, alice, {"title": "New title only"})

    assert thread.title == "New title only"
    assert thread.content == CONTENT


async def test_edit_without_changes_still_creates_a_version(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    thread = await forum.edit_thread(thread.thread_id, alice, {"title": TITLE})

    assert thread.current_version == 2
    assert len(await forum.list_thread_history(thread.thread_id)) == 1


async def test_unknown_field_is_rejected(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    with pytest.raises(ValidationFailed):
        await forum.edit_thread(thread.thread_id, alice, {"author_id": 99})


async def test_stale_expected_version_conflicts_without_side_effects(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Someone else won"}, expected_version=1)

    with pytest.raises(Conflict):
        await forum.edit_thread(thread.thread_id, alice, {"title": "Lost update"}, expected_version=1)

    current = await forum.get_thread(thread.thread_id)
    assert current.title == "Someone else won"
    assert current.current_version == 2
    assert [r.version for r in await forum.list_thread_history(thread.thread_id)] == [1]


async def test_concurrent_edits_of_same_version_let_exactly_one_win(forum, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)

    results = await asyncio.gather(
        forum.edit_thread(thread.thread_id, alice, {"title": "Edit from tab one"}, expected_version=1),
        forum.edit_thread(thread.thread_id, alice, {"title": "Edit from tab two"}, expected_version=1),
        return_exceptions=True,
    )

    assert sum(isinstance(result, Conflict) for result in results) == 1
    current = await forum.get_thread(thread.thread_id)
    assert current.current_version == 2
    assert len(await forum.list_thread_history(thread.thread_id)) == 1


async def test_only_author_or_admin_may_edit(forum, admin, alice, bob):
    thread = await forum.create_thread(alice, TITLE, CONTENT)

    with pytest.raises(Forbidden):
        await forum.edit_thread(thread.thread_id, bob, {"title": "Hijacked title"})
    with pytest.raises(Forbidden):
        await forum.delete_thread(thread.thread_id, bob)

    edited = await forum.edit_thread(thread.thread_id, admin, {"title": "Moderated title"})
    assert edited.current_version == 2
    record = await forum.get_thread_version(thread.thread_id, 1)
    assert record.editor_id == admin.id


async def test_admin_edit_of_foreign_content_is_logged(forum, admin, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Own edit title"})
    await forum.edit_thread(thread.thread_id, admin, {"title": "Admin edit title"})

    log = await forum.list_page("moderation_log", PageRequest(page=1, page_size=10), actor=admin)
    assert [(entry["action"], entry["target_type"]) for entry in log.items] == [("edit", "thread")]


async def test_missing_entities_are_not_found(forum, alice):
    with pytest.raises(NotFound):
        await forum.edit_thread(404, alice, {"title": "Nothing here"})
    with pytest.raises(NotFound):
        await forum.delete_post(404, alice)
    with pytest.raises(NotFound):
        await forum.list_post_history(404)
    with pytest.raises(NotFound):
        await forum.create_post(404, alice, "Reply to nothing")


async def test_post_history(forum, alice, bob):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    post = await forum.create_post(thread.thread_id, bob, "first wording")
    post = await forum.edit_post(post.post_id, bob, {"content": "second wording"})

    assert post.current_version == 2
    record = await forum.get_post_version(post.post_id, 1)
    assert record.content == "first wording"
    assert record.title is None
    with pytest.raises(ValidationFailed):
        await forum.edit_post(post.post_id, bob, {"title": "posts have no title"})


async def test_deleting_thread_removes_posts_and_all_history(forum, alice, bob):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    post = await forum.create_post(thread.thread_id, bob, "a reply")
    await forum.edit_post(post.post_id, bob, {"content": "an edited reply"})
    await forum.edit_thread(thread.thread_id, alice, {"title": "Edited before delete"})

    await forum.delete_thread(thread.thread_id, alice)

    with pytest.raises(NotFound):
        await forum.get_thread(thread.thread_id)
    with pytest.raises(NotFound):
        await forum.get_post(post.post_id)
    row = await forum.db.execute_query("SELECT COUNT(*) FROM revisions", fetch_one=True)
    assert row[0] == 0


async def test_deleting_post_removes_its_history_only(forum, alice, bob):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.edit_thread(thread.thread_id, alice, {"title": "Thread keeps history"})
    post = await forum.create_post(thread.thread_id, bob, "a reply")
    await forum.edit_post(post.post_id, bob, {"content": "edited reply"})

    await forum.delete_post(post.post_id, bob)

    assert len(await forum.list_thread_history(thread.thread_id)) == 1
    row = await forum.db.execute_query("SELECT COUNT(*) FROM revisions WHERE entity_type = 'post'", fetch_one=True)
    assert row[0] == 0


async def test_banned_author_cannot_write(forum, admin, alice):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    await forum.ban(admin, alice.id, "spam")
    banned = await refreshed(forum, alice)

    assert banned.is_banned
    with pytest.raises(Forbidden):
        await forum.edit_thread(thread.thread_id, banned, {"title": "Sneaky edit"})
    with pytest.raises(Forbidden):
        await forum.create_thread(banned, "Another thread", CONTENT)


async def test_thread_categories_must_exist(forum, admin, alice):
    category = await forum.create_category(admin, "General", "Anything goes")
    thread = await forum.create_thread(alice, TITLE, CONTENT, category_ids=[category.category_id])
    assert thread.category_ids == (category.category_id,)

    with pytest.raises(ValidationFailed):
        await forum.create_thread(alice, TITLE, CONTENT, category_ids=[category.category_id, 999])


async def test_failed_thread_delete_leaves_everything_in_place(forum, alice, bob, monkeypatch):
    thread = await forum.create_thread(alice, TITLE, CONTENT)
    post = await forum.create_post(thread.thread_id, bob, "a reply")
    await forum.edit_post(post.post_id, bob, {"content": "an edited reply"})
    await forum.edit_thread(thread.thread_id, alice, {"title": "Edited before delete"})

    real_purge = forum.revisions.purge

    async def purge_then_fail(conn, entity_type, entity_ids):
        await real_purge(conn, entity_type, entity_ids)
        if entity_type == "thread":
            raise RuntimeError("disk I/O error")

    monkeypatch.setattr(forum.revisions, "purge", purge_then_fail)
    with pytest.raises(RuntimeError):
        await forum.delete_thread(thread.thread_id, alice)

    assert (await forum.get_thread(thread.thread_id)).current_version == 2
    assert (await forum.get_post(post.post_id)).current_version == 2
    assert [r.version for r in await forum.list_post_history(post.post_id)] == [1]
    row = await forum.db.execute_query("SELECT COUNT(*) FROM revisions", fetch_one=True)
    assert row[0] == 2
