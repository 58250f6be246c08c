"""
Authentication router for the signed-in user's profile.

Session tokens are minted by the identity layer with services.session_token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import get_credit_balance
from services.session_token import revoke_session_token

router = APIRouter()


class CurrentUserResponse(BaseModel):
    success: bool = True
    user_id: str
    email: str
    full_name: Optional[str] = None
    offers: bool = False
    credits: int = 0


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current user profile and available credits."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    credits = await get_credit_balance(user.id, db)
    await db.commit()
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        offers=bool(user.offers),
        credits=credits,
    )


@router.post("/logout")
async def logout(auth: AuthContext = Depends(get_auth_context)):
    """Revoke the presented session token."""
    revoke_session_token(auth.claims)
    return {"success": True, "message": "Logged out successfully"}
