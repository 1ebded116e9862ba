"""API key authentication and the role/ownership capability."""

import hashlib
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.db import get_session
from colloquy.models import Role, Trace, User

ROLE_RANK = {Role.MEMBER: 0, Role.EDITOR: 1, Role.ADMIN: 2}


def generate_api_key() -> str:
    return f"clq_{secrets.token_urlsafe(32)}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class Authorization(ABC):
    """Ownership and role checks consumed by the state machine and endpoint guards."""

    @abstractmethod
    async def is_owner(self, session: AsyncSession, trace_id: UUID, actor_id: UUID) -> bool:
        ...

    @abstractmethod
    async def has_role(self, session: AsyncSession, actor_id: UUID, role: Role) -> bool:
        """True when the actor holds the role or a higher one."""


class DatabaseAuthorization(Authorization):
    async def is_owner(self, session: AsyncSession, trace_id: UUID, actor_id: UUID) -> bool:
        result = await session.execute(select(Trace.editor_id).where(Trace.id == trace_id))
        editor_id = result.scalar_one_or_none()
        return editor_id is not None and editor_id == actor_id

    async def has_role(self, session: AsyncSession, actor_id: UUID, role: Role) -> bool:
        result = await session.execute(select(User.role).where(User.id == actor_id))
        actual = result.scalar_one_or_none()
        return actual is not None and ROLE_RANK[actual] >= ROLE_RANK[role]


class SystemAuthorization(Authorization):
    """Grants everything. Used for transitions initiated by workers."""

    async def is_owner(self, session: AsyncSession, trace_id: UUID, actor_id: UUID) -> bool:
        return True

    async def has_role(self, session: AsyncSession, actor_id: UUID, role: Role) -> bool:
        return True


def get_authorization() -> Authorization:
    return DatabaseAuthorization()


@dataclass
class ActorContext:
    """Authenticated caller for a request."""

    actor_id: UUID
    role: Role
    session: AsyncSession
    authorization: Authorization


async def get_actor_context(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    authz: Authorization = Depends(get_authorization),
) -> ActorContext:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    api_key = authorization.removeprefix("Bearer ").strip()
    result = await session.execute(select(User).where(User.api_key_hash == hash_api_key(api_key)))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return ActorContext(actor_id=user.id, role=user.role, session=session, authorization=authz)
