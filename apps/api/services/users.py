"""User row helpers shared by the ledger, jobs and billing webhooks."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.errors import ValidationError

logger = logging.getLogger(__name__)


def placeholder_email(user_id: str) -> str:
    return f"{user_id}@local.invalid"


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the user row, creating a placeholder when the auth provider knows a user we don't."""
    user = await _get_user(db, user_id)
    if user:
        return user

    address = email or placeholder_email(user_id)
    if email:
        owner = await find_user_id_by_email(db, email)
        if owner and owner != user_id:
            # Emails are unique per account.
            logger.warning("Email for new user %s already belongs to %s; using placeholder", user_id, owner)
            address = placeholder_email(user_id)

    user = User(id=user_id, email=address)
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        user = await _get_user(db, user_id)
        if user is None:
            logger.exception("Could not create user %s", user_id)
            raise ValidationError(f"Could not create user {user_id}.")
    return user


async def find_user_id_by_email(db: AsyncSession, email: str) -> Optional[str]:
    normalized = (email or "").strip().lower()
    if not normalized:
        return None
    result = await db.execute(select(User.id).where(func.lower(User.email) == normalized))
    return result.scalar_one_or_none()
