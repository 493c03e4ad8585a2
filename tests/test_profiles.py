import pytest

from exceptions import Forbidden, NotFound

CONTENT = "Thread body long enough"


async def test_profile_shows_counts_and_newest_activity(forum, alice, bob):
    threads = [await forum.create_thread(alice, f"Alice thread {n}", CONTENT) for n in range(7)]
    for n in range(6):
        await forum.create_post(threads[0].thread_id, alice, f"alice reply {n}")
    await forum.create_post(threads[0].thread_id, bob, "bob reply")

    profile = await forum.get_profile("alice")

    assert profile.user.username == "alice"
    assert (profile.user.thread_count, profile.user.post_count) == (7, 6)
    assert [t.title for t in profile.threads] == [f"Alice thread {n}" for n in range(6, 1, -1)]
    assert [p.content for p in profile.posts] == [f"alice reply {n}" for n in range(5, 0, -1)]
    assert profile.posts[0].thread_title == "Alice thread 0"


async def test_profile_of_missing_or_deleted_user_is_not_found(forum, admin, alice):
    with pytest.raises(NotFound):
        await forum.get_profile("nobody")

    await forum.delete_user(admin, alice.id)
    with pytest.raises(NotFound):
        await forum.get_profile("alice")


async def test_admin_activity_view(forum, admin, alice, bob):
    thread = await forum.create_thread(alice, "Activity thread", CONTENT)
    for n in range(12):
        await forum.create_post(thread.thread_id, alice, f"reply {n}")

    activity = await forum.get_user_activity(admin, alice.id)
    assert [t.thread_id for t in activity.threads] == [thread.thread_id]
    assert len(activity.posts) == 10
    assert activity.posts[0].content == "reply 11"

    with pytest.raises(Forbidden):
        await forum.get_user_activity(bob, alice.id)
    with pytest.raises(NotFound):
        await forum.get_user_activity(admin, 404)


async def test_admin_activity_still_covers_deleted_accounts(forum, admin, alice):
    await forum.create_thread(alice, "Left behind", CONTENT)
    await forum.delete_user(admin, alice.id)

    activity = await forum.get_user_activity(admin, alice.id)
    assert activity.user.is_deleted
    assert [t.title for t in activity.threads] == ["Left behind"]
