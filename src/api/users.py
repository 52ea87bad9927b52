# coding: utf-8
"""
Users API Endpoints

Member creation and wallet binding.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.api_key_auth import verify_admin_key
from src.database import crud
from src.database.engine import get_session
from src.services.certificates.errors import UserNotFoundError

router = APIRouter(prefix="/users", tags=["users"])


class CreateUserRequest(BaseModel):
    username: str = Field(min_length=1, max_length=100)
    student_id: Optional[str] = Field(None, max_length=50)


class BindWalletRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: str = Field(alias="walletAddress")


@router.post("", dependencies=[Depends(verify_admin_key)])
async def create_user(
    request: CreateUserRequest,
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    user = await crud.create_user(session, request.username, request.student_id)
    return {"id": user.id, "username": user.username, "points": user.points}


@router.get("/{user_id}")
async def get_user(user_id: int, session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    user = await crud.get_user(session, user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return {
        "id": user.id,
        "username": user.username,
        "student_id": user.student_id,
        "points": user.points,
        "wallet_address": await crud.get_wallet_address(session, user_id),
    }


@router.post("/{user_id}/wallet")
async def bind_wallet(
    user_id: int,
    request: BindWalletRequest,
    session: AsyncSession = Depends(get_session),
) -> Dict[str, Any]:
    wallet = await crud.bind_wallet(session, user_id, request.wallet_address)
    return {"success": True, "wallet_address": wallet.wallet_address}


@router.get("/{user_id}/wallet")
async def get_wallet(user_id: int, session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    return {"wallet_address": await crud.get_wallet_address(session, user_id)}
