import asyncio
from types import SimpleNamespace

import pytest

from exceptions import (ErrorCode, Forbidden, LastAdminViolation, LockedWriteBarrier, NotFound,
                        SelfActionViolation, ValidationFailed)
from moderation import (Denial, can_ban, can_change_role, can_delete_own_account, can_delete_user, can_moderate,
                        can_post_reply, ensure, is_last_admin)
from pagination import PageRequest
from tests.conftest import refreshed
from users import Actor, Role, UserStatus
from utils import timestamp

CONTENT = "Thread body long enough"


def _target(user_id, role=Role.ADMIN, deleted=False, banned=False):
    return SimpleNamespace(user_id=user_id, role=role, is_deleted=deleted, is_banned=banned)


def test_guard_predicates_are_pure():
    admin = Actor(id=1, role=Role.ADMIN)
    user = Actor(id=2)
    post = SimpleNamespace(author_id=2)

    assert can_moderate(user, post) is None
    assert can_moderate(admin, post) is None
    assert can_moderate(Actor(id=3), post).code == ErrorCode.FORBIDDEN
    assert can_change_role(user, _target(1), Role.USER, 2).code == ErrorCode.FORBIDDEN
    assert can_change_role(admin, _target(5), Role.USER, 1).code == ErrorCode.LAST_ADMIN_VIOLATION
    assert can_change_role(admin, _target(5), Role.ADMIN, 1) is None
    assert can_delete_user(admin, _target(5), 1).code == ErrorCode.LAST_ADMIN_VIOLATION
    assert can_delete_user(admin, _target(1), 2).code == ErrorCode.SELF_ACTION_VIOLATION
    assert can_delete_user(admin, _target(5, Role.USER), 1) is None
    assert can_ban(admin, _target(5), 1).code == ErrorCode.LAST_ADMIN_VIOLATION
    assert can_ban(admin, _target(5), 2) is None
    assert can_delete_own_account(admin, 1).code == ErrorCode.LAST_ADMIN_VIOLATION
    assert can_delete_own_account(Actor(id=2, is_banned=True), 1) is None


def test_last_admin_ignores_deleted_and_regular_users():
    assert is_last_admin(_target(1), 1)
    assert not is_last_admin(_target(1), 2)
    assert not is_last_admin(_target(1, Role.USER), 1)
    assert not is_last_admin(_target(1, deleted=True), 1)
    assert not is_last_admin(_target(1, banned=True), 1)


def test_locked_thread_blocks_replies_only():
    locked = SimpleNamespace(is_locked=True, author_id=2)
    author = Actor(id=2)

    assert can_post_reply(author, locked).code == ErrorCode.LOCKED_WRITE_BARRIER
    assert can_post_reply(author, SimpleNamespace(is_locked=False)) is None
    assert can_post_reply(None, SimpleNamespace(is_locked=False)).code == ErrorCode.FORBIDDEN
    assert can_post_reply(Actor(id=2, is_banned=True), SimpleNamespace(is_locked=False)).code == ErrorCode.FORBIDDEN
    assert can_moderate(author, locked) is None


def test_ensure_raises_the_matching_error():
    ensure(None)
    with pytest.raises(SelfActionViolation, match="yourself"):
        ensure(Denial(ErrorCode.SELF_ACTION_VIOLATION, "You cannot ban yourself"))


async def test_demoting_the_sole_admin_fails(forum, admin):
    with pytest.raises(LastAdminViolation):
        await forum.set_role(admin, admin.id, Role.USER)
    assert (await forum.get_user(admin.id)).role == Role.ADMIN


async def test_two_admins_scenario(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)

    demoted = await forum.set_role(admin, second.id, Role.USER)
    assert demoted.role == Role.USER

    with pytest.raises(LastAdminViolation):
        await forum.set_role(admin, admin.id, Role.USER)


async def test_self_demotion_allowed_when_another_admin_remains(forum, admin, make_user):
    await make_user("second", Role.ADMIN)

    me = await forum.set_role(admin, admin.id, Role.USER)
    assert me.role == Role.USER


async def test_promotion_and_role_log(forum, admin, alice):
    await forum.set_role(admin, alice.id, Role.ADMIN)
    await forum.set_role(admin, alice.id, Role.ADMIN)

    log = await forum.list_page("moderation_log", PageRequest(), actor=admin)
    assert [entry["action"] for entry in log.items] == ["promote_admin"]


async def test_self_ban_and_self_delete_are_rejected(forum, admin):
    with pytest.raises(SelfActionViolation):
        await forum.ban(admin, admin.id, "testing")
    with pytest.raises(SelfActionViolation):
        await forum.delete_user(admin, admin.id)


async def test_non_admins_cannot_moderate_users(forum, alice, bob):
    with pytest.raises(Forbidden):
        await forum.ban(alice, bob.id)
    with pytest.raises(Forbidden):
        await forum.set_role(alice, alice.id, Role.ADMIN)
    with pytest.raises(Forbidden):
        await forum.delete_user(alice, bob.id)


async def test_ban_records_reason_and_rebanning_updates_it(forum, admin, alice):
    until = timestamp() + 3600
    banned = await forum.ban(admin, alice.id, "spam", until)
    assert banned.status == UserStatus.BANNED
    assert banned.ban_reason == "spam"
    assert banned.banned_until == until
    assert banned.banned_by == admin.id

    rebanned = await forum.ban(admin, alice.id, "more spam")
    assert rebanned.ban_reason == "more spam"
    assert rebanned.banned_until is None


async def test_ban_end_must_lie_in_the_future(forum, admin, alice):
    with pytest.raises(ValidationFailed):
        await forum.ban(admin, alice.id, "too late", timestamp() - 1)


async def test_expired_ban_is_not_effective(forum, admin, alice):
    thread = await forum.create_thread(alice, "Before the ban", CONTENT)
    await forum.ban(admin, alice.id, "cool off", timestamp() + 60)
    async with forum.db.transaction() as conn:
        await conn.execute("UPDATE users SET banned_until = ? WHERE user_id = ?", (timestamp() - 1, alice.id))

    actor = await refreshed(forum, alice)
    assert not actor.is_banned
    post = await forum.create_post(thread.thread_id, actor, "back again")
    assert post.author_id == alice.id


async def test_unban_restores_writing_and_is_a_no_op_for_active_users(forum, admin, alice, bob):
    await forum.ban(admin, alice.id)
    user = await forum.unban(admin, alice.id)
    assert user.status == UserStatus.ACTIVE
    assert user.ban_reason is None

    untouched = await forum.unban(admin, bob.id)
    assert untouched.status == UserStatus.ACTIVE

    log = await forum.list_page("moderation_log", PageRequest(), actor=admin)
    assert [entry["action"] for entry in log.items] == ["unban", "ban"]
    assert log.items[1]["reason"] == "No reason provided"


async def test_deleted_users_are_gone_for_moderation(forum, admin, alice):
    await forum.delete_user(admin, alice.id)

    for operation in (
        forum.set_role(admin, alice.id, Role.ADMIN),
        forum.ban(admin, alice.id),
        forum.unban(admin, alice.id),
        forum.delete_user(admin, alice.id),
    ):
        with pytest.raises(NotFound):
            await operation
    assert await forum.users.get_actor(alice.id) is None


async def test_deleted_admin_does_not_count_towards_admins(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)
    await forum.delete_user(admin, second.id)

    with pytest.raises(LastAdminViolation):
        await forum.set_role(admin, admin.id, Role.USER)


async def test_reply_to_locked_thread_is_refused(forum, admin, alice, bob):
    thread = await forum.create_thread(alice, "Heated debate", CONTENT)
    post = await forum.create_post(thread.thread_id, bob, "opinion")
    locked = await forum.set_thread_lock(thread.thread_id, admin, True)
    assert locked.is_locked

    with pytest.raises(LockedWriteBarrier):
        await forum.create_post(thread.thread_id, bob, "one more thing")
    with pytest.raises(LockedWriteBarrier):
        await forum.create_post(thread.thread_id, admin, "admins wait too")

    edited_post = await forum.edit_post(post.post_id, bob, {"content": "revised opinion"})
    assert edited_post.current_version == 2
    edited = await forum.edit_thread(thread.thread_id, alice, {"title": "Calmer debate"})
    assert edited.is_locked
    await forum.delete_thread(thread.thread_id, alice)


async def test_lock_is_admin_only_and_logged(forum, admin, alice):
    thread = await forum.create_thread(alice, "Lock me", CONTENT)
    with pytest.raises(Forbidden):
        await forum.set_thread_lock(thread.thread_id, alice, True)

    await forum.set_thread_lock(thread.thread_id, admin, True)
    unlocked = await forum.set_thread_lock(thread.thread_id, admin, False)
    assert not unlocked.is_locked
    await forum.create_post(thread.thread_id, alice, "open again")

    log = await forum.list_page("moderation_log", PageRequest(), actor=admin)
    assert [entry["action"] for entry in log.items] == ["unlock", "lock"]


async def test_banned_admin_loses_admin_powers(forum, admin, make_user, alice):
    second = await make_user("second", Role.ADMIN)
    await forum.ban(admin, second.id, "compromised account")
    banned_admin = await refreshed(forum, second)

    with pytest.raises(Forbidden):
        await forum.ban(banned_admin, alice.id)


async def test_banned_admin_does_not_count_towards_admins(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)
    await forum.ban(admin, second.id, "compromised account")

    with pytest.raises(LastAdminViolation):
        await forum.set_role(admin, admin.id, Role.USER)
    assert (await forum.get_user(admin.id)).role == Role.ADMIN

    # The remaining admin can still lift the ban.
    await forum.unban(admin, second.id)
    demoted = await forum.set_role(admin, admin.id, Role.USER)
    assert demoted.role == Role.USER


async def test_expired_ban_counts_the_admin_again(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)
    await forum.ban(admin, second.id, "cool off", timestamp() + 60)
    async with forum.db.transaction() as conn:
        await conn.execute("UPDATE users SET banned_until = ? WHERE user_id = ?", (timestamp() - 1, second.id))

    demoted = await forum.set_role(admin, admin.id, Role.USER)
    assert demoted.role == Role.USER


async def test_admins_banning_each_other_leave_one_admin(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)

    results = await asyncio.gather(
        forum.ban(admin, second.id, "rogue"),
        forum.ban(second, admin.id, "rogue"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, LastAdminViolation) for result in results) == 1
    users = [await forum.get_user(admin.id), await forum.get_user(second.id)]
    assert sum(not user.is_banned for user in users) == 1


async def test_concurrent_mutual_demotion_keeps_one_admin(forum, admin, make_user):
    second = await make_user("second", Role.ADMIN)

    results = await asyncio.gather(
        forum.set_role(admin, second.id, Role.USER),
        forum.set_role(second, admin.id, Role.USER),
        return_exceptions=True,
    )

    assert sum(isinstance(result, LastAdminViolation) for result in results) == 1
    roles = [(await forum.get_user(admin.id)).role, (await forum.get_user(second.id)).role]
    assert roles.count(Role.ADMIN) == 1


async def test_delete_own_account(forum, admin, alice):
    thread = await forum.create_thread(alice, "Leaving soon", CONTENT)

    await forum.delete_own_account(alice)

    with pytest.raises(NotFound):
        await forum.get_user(alice.id)
    assert await forum.users.get_actor(alice.id) is None
    assert (await forum.get_thread(thread.thread_id)).author_name == "alice"
    log = await forum.list_page("moderation_log", PageRequest(), actor=admin)
    assert log.items == []


async def test_banned_user_may_delete_own_account(forum, admin, alice):
    await forum.ban(admin, alice.id, "spam")
    banned = await refreshed(forum, alice)

    await forum.delete_own_account(banned)
    assert await forum.users.get_actor(alice.id) is None


async def test_last_admin_cannot_delete_own_account(forum, admin, make_user):
    with pytest.raises(LastAdminViolation):
        await forum.delete_own_account(admin)

    await make_user("second", Role.ADMIN)
    await forum.delete_own_account(admin)
    assert await forum.users.get_actor(admin.id) is None
