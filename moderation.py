"""Authorization and moderation invariants.

Every predicate is pure: it looks only at its arguments and returns ``None``
when the action is allowed, or a ``Denial`` naming the failure. Callers that
need an aggregate (the number of remaining administrators) read it inside the
same transaction as the write they are about to perform and pass it in.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from exceptions import ERRORS_BY_CODE, ErrorCode, ForumError

logger = logging.getLogger(__name__)

ADMIN = "ADMIN"


@dataclass(frozen=True, slots=True)
class Denial:
    code: ErrorCode
    reason: str

    def to_error(self) -> ForumError:
        return ERRORS_BY_CODE[self.code](self.reason)


def ensure(denial: Optional[Denial]) -> None:
    """Raise the error a denial stands for; do nothing when allowed."""
    if denial is None:
        return
    logger.warning("action denied: %s (%s)", denial.reason, denial.code.value)
    raise denial.to_error()


def _forbidden(reason: str) -> Denial:
    return Denial(ErrorCode.FORBIDDEN, reason)


def is_admin(actor) -> bool:
    return actor is not None and actor.role == ADMIN


def is_author(actor, entity) -> bool:
    return actor is not None and actor.id == entity.author_id


def is_effective_admin(user) -> bool:
    """An administrator who can still use admin powers."""
    return user.role == ADMIN and not user.is_deleted and not user.is_banned


def is_last_admin(target, admin_count: int) -> bool:
    # admin_count only covers effective administrators, see DatabaseManager.count_admins.
    return is_effective_admin(target) and admin_count <= 1


def can_author(actor) -> Optional[Denial]:
    """Any content write needs a live, unbanned account."""
    if actor is None:
        return _forbidden("You must be logged in to do this")
    if actor.is_deleted:
        return _forbidden("Account has been deleted")
    if actor.is_banned:
        return _forbidden("Account banned")
    return None


def require_admin(actor) -> Optional[Denial]:
    denial = can_author(actor)
    if denial is not None:
        return denial
    if not is_admin(actor):
        return _forbidden("Admin privileges required")
    return None


def can_moderate(actor, entity) -> Optional[Denial]:
    """Edit or delete a thread or post: its author or any administrator."""
    if is_author(actor, entity) or is_admin(actor):
        return None
    return _forbidden("You do not have permission to change this content")


def can_post_reply(actor, thread) -> Optional[Denial]:
    # The lock gates new replies only; edits and deletes go through can_moderate.
    denial = can_author(actor)
    if denial is not None:
        return denial
    if thread.is_locked:
        return Denial(ErrorCode.LOCKED_WRITE_BARRIER, "Thread is locked, new replies are not allowed")
    return None


def can_lock(actor) -> Optional[Denial]:
    return require_admin(actor)


def can_change_role(actor, target, new_role, admin_count: int) -> Optional[Denial]:
    denial = require_admin(actor)
    if denial is not None:
        return denial
    if new_role != ADMIN and is_last_admin(target, admin_count):
        return Denial(ErrorCode.LAST_ADMIN_VIOLATION,
                      "The last administrator cannot be made a regular user")
    return None


def can_ban(actor, target, admin_count: int) -> Optional[Denial]:
    denial = require_admin(actor)
    if denial is not None:
        return denial
    if actor.id == target.user_id:
        return Denial(ErrorCode.SELF_ACTION_VIOLATION, "You cannot ban yourself")
    if is_last_admin(target, admin_count):
        return Denial(ErrorCode.LAST_ADMIN_VIOLATION, "The last administrator cannot be banned")
    return None


def can_unban(actor, target) -> Optional[Denial]:
    return require_admin(actor)


def can_delete_user(actor, target, admin_count: int) -> Optional[Denial]:
    denial = require_admin(actor)
    if denial is not None:
        return denial
    if actor.id == target.user_id:
        return Denial(ErrorCode.SELF_ACTION_VIOLATION, "You cannot delete yourself")
    if is_last_admin(target, admin_count):
        return Denial(ErrorCode.LAST_ADMIN_VIOLATION, "The last administrator cannot be deleted")
    return None


def can_delete_own_account(actor, admin_count: int) -> Optional[Denial]:
    """Closing one's own account; banned users may still leave."""
    if actor is None or actor.is_deleted:
        return _forbidden("You must be logged in to do this")
    if is_last_admin(actor, admin_count):
        return Denial(ErrorCode.LAST_ADMIN_VIOLATION,
                      "The last administrator cannot delete their account")
    return None
