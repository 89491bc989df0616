from __future__ import annotations

import logging
import uuid
from typing import List, Optional, Union

from .models import Role, User
from .storage import AppDataStore

logger = logging.getLogger(__name__)

UNKNOWN_ACTOR = "unknown"


class Directory:
    """
    User records and the current session.

    Login is find-or-create by username; there are no passwords. Role checks
    exist so the presentation layer can hide actions, nothing more.
    """

    def __init__(self, store: AppDataStore) -> None:
        self.store = store

    async def login(self, username: str, role: Union[Role, str, None]) -> Optional[User]:
        if not username or not role:
            return None
        try:
            role = Role(role)
        except ValueError:
            logger.warning("Rejected login for %s with unknown role %r", username, role)
            return None

        user = await self.store.find_user_by_username(username)
        if user is None:
            user = User(
                user_id=f"user_{uuid.uuid4().hex[:12]}",
                username=username,
                full_name=f"{username[:1].upper()}{username[1:]} User",
                email=f"{username}@company.com",
                role=role,
            )
            await self.store.save_user(user)
            logger.info("Created user %s (%s)", username, role.value)

        await self.store.set_session(user)
        return user

    async def logout(self) -> None:
        await self.store.set_session(None)

    async def current_user(self) -> Optional[User]:
        return await self.store.get_session()

    async def actor_id(self) -> str:
        user = await self.store.get_session()
        return user.user_id if user is not None else UNKNOWN_ACTOR

    async def has_role(self, role: Role) -> bool:
        user = await self.store.get_session()
        return user is not None and user.role == role

    async def is_admin(self) -> bool:
        return await self.has_role(Role.ADMIN)

    async def is_supervisor(self) -> bool:
        # admins can do everything a supervisor can
        user = await self.store.get_session()
        return user is not None and user.role in (Role.ADMIN, Role.SUPERVISOR)

    async def is_operator(self) -> bool:
        return await self.has_role(Role.OPERATOR)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self.store.get_user(user_id)

    async def list_users(self) -> List[User]:
        return await self.store.list_users()
