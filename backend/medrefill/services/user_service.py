"""Identity lookups.  Users are owned by the external identity provider;
this service only resolves them and checks role tags.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medrefill.models.user import User, UserRole
from medrefill.services.errors import NotFoundError, PermissionDeniedError


async def lookup_user(db: AsyncSession, email: str) -> User:
    result = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


def ensure_role(user: User, *roles: UserRole, action: str = "perform this action") -> None:
    if UserRole(user.role) not in roles:
        allowed = " or ".join(r.value for r in roles)
        raise PermissionDeniedError(f"Only {allowed} users can {action}")
