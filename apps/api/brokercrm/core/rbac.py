from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from brokercrm.core.auth import AuthUser, get_current_user


def require_role(*roles: str) -> Callable[[AuthUser | None], AuthUser | None]:
    async def checker(user: AuthUser | None = Depends(get_current_user)) -> AuthUser | None:
        if user is None:
            # authentication is switched off
            return None
        if user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return user

    return checker
