"""Account management operations used by the HTTP controllers and the CLI."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .database import Database
from .events import EventAggregator, UserApprovedEvent
from .models import ApplicationUserData, User, normalise_roles, utcnow
from .roles import SERVER_ADMIN, has_server_admin
from .storage import FileService, FilesQuery, StoredFileRepository

logger = logging.getLogger("payserver.users")

Clock = Callable[[], datetime]


def _is_email_confirmed(user: User) -> bool:
    return user.email_confirmed or not user.requires_email_confirmation


def _is_approved(user: User) -> bool:
    return user.approved or not user.requires_approval


def _is_disabled(user: User, now: Optional[datetime] = None) -> bool:
    return user.is_disabled(now)


class UserService:
    """Orchestrates the identity store, file storage and event bus for accounts.

    Every public method opens its own identity scope and closes it before
    returning. Expected conditions (unknown user, nothing to change) are
    reported through the return value; database faults propagate.
    """

    def __init__(
        self,
        database: Database,
        stored_files: StoredFileRepository,
        file_service: FileService,
        events: EventAggregator,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._database = database
        self._stored_files = stored_files
        self._file_service = file_service
        self._events = events
        self._clock = clock

    def get_users_with_roles(self) -> List[ApplicationUserData]:
        now = self._clock()
        return [
            self.from_model(user, roles, now=now)
            for user, roles in self._database.list_users_with_roles()
        ]

    @staticmethod
    def from_model(
        user: User,
        roles: Sequence[Optional[str]],
        *,
        now: Optional[datetime] = None,
    ) -> ApplicationUserData:
        return ApplicationUserData(
            id=user.id,
            email=user.email,
            email_confirmed=user.email_confirmed,
            requires_email_confirmation=user.requires_email_confirmation,
            approved=user.approved,
            requires_approval=user.requires_approval,
            created=user.created,
            roles=normalise_roles(roles),
            disabled=_is_disabled(user, now),
        )

    @staticmethod
    def try_can_login(
        user: Optional[User],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Return ``(True, None)`` if ``user`` may sign in, else ``(False, reason)``.

        Checks run in a fixed order and the first failure is reported.
        """

        if user is None:
            return False, "Invalid login attempt."
        if not _is_email_confirmed(user):
            return False, "You must have a confirmed email to log in."
        if not _is_approved(user):
            return False, "Your user account requires approval by an admin before you can log in."
        if _is_disabled(user, now):
            return False, "Your user account is currently disabled."
        return True, None

    def set_user_approval(self, user_id: str, approved: bool, request_uri: str) -> bool:
        with self._database.identity_scope() as manager:
            user = manager.find_by_id(user_id)
            if user is None or not user.requires_approval or user.approved == approved:
                return False

            user.approved = approved
            succeeded = manager.update(user).succeeded

        if succeeded:
            logger.info("User %s is now %s", user.id, "approved" if approved else "unapproved")
            self._events.publish(UserApprovedEvent(user=user, approved=approved, request_uri=request_uri))
        else:
            logger.error("Failed to %s user %s", "approve" if approved else "unapprove", user.id)
        return succeeded

    def toggle_user(self, user_id: str, lockout_deadline: Optional[datetime]) -> Optional[bool]:
        """Lock the account until ``lockout_deadline`` or unlock it when ``None``.

        Returns ``None`` when the user does not exist.
        """

        with self._database.identity_scope() as manager:
            user = manager.find_by_id(user_id)
            if user is None:
                return None
            if lockout_deadline is not None:
                manager.set_lockout_enabled(user, True)

            result = manager.set_lockout_end_date(user, lockout_deadline)

        if result.succeeded:
            logger.info("User %s is now %s", user.id, "unlocked" if lockout_deadline is None else "locked")
        else:
            logger.error("Failed to set lockout for user %s: %s", user.id, ", ".join(result.errors))
        return result.succeeded

    def is_admin_user(self, user: Union[str, User]) -> bool:
        if isinstance(user, str):
            user = User(id=user)
        with self._database.identity_scope() as manager:
            return has_server_admin(manager.get_roles(user))

    def set_admin_user(self, user_id: str, enable_admin: bool) -> bool:
        with self._database.identity_scope() as manager:
            user = manager.find_by_id(user_id)
            if user is None:
                return False
            if enable_admin:
                result = manager.add_to_role(user, SERVER_ADMIN)
            else:
                result = manager.remove_from_role(user, SERVER_ADMIN)

        if result.succeeded:
            logger.info("Successfully set admin status for user %s", user.id)
        else:
            logger.error("Error setting admin status for user %s: %s", user.id, ", ".join(result.errors))
        return result.succeeded

    async def delete_user_and_associated_data(self, user: User) -> None:
        """Remove every file owned by ``user`` and then the account itself.

        File removals run concurrently and their failures do not prevent the
        account from being deleted.
        """

        user_id = user.id
        with self._database.identity_scope() as manager:
            files = self._stored_files.get_files(FilesQuery(user_ids=(user_id,)))
            results = await asyncio.gather(
                *(self._file_service.remove_file(stored.id, user_id) for stored in files),
                return_exceptions=True,
            )
            for stored, outcome in zip(files, results):
                if isinstance(outcome, Exception):
                    logger.warning("Failed to remove file %s of user %s: %s", stored.id, user_id, outcome)

            current = manager.find_by_id(user_id)
            if current is None:
                return
            result = manager.delete(current)

        if result.succeeded:
            logger.info("User %s was successfully deleted", user_id)
        else:
            logger.error("Failed to delete user %s: %s", user_id, ", ".join(result.errors))

    def is_user_the_only_one_admin(self, user: User) -> bool:
        now = self._clock()
        with self._database.identity_scope() as manager:
            if not has_server_admin(manager.get_roles(user)):
                return False
            admin_users = manager.get_users_in_role(SERVER_ADMIN)

        enabled_admin_ids = [
            admin.id
            for admin in admin_users
            if not _is_disabled(admin, now) and _is_approved(admin)
        ]
        return len(enabled_admin_ids) == 1 and user.id in enabled_admin_ids


__all__ = ["UserService"]
