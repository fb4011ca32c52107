"""
verification.py — Router de verificación step-up
------------------------------------------------
Expone:
  POST /v1/verification/verify   → valida el código y devuelve el contexto de pago
  POST /v1/verification/resend   → envía un código nuevo (cooldown de 60s)
  GET  /v1/verification/{token}  → estado del desafío

Todos requieren sesión: el desafío pertenece al usuario que lo originó.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_trust.api.dependencies import (
    get_current_user,
    get_db_session,
    get_verification_manager,
)
from checkout_trust.domain.schemas import (
    ChallengeStatusResponse,
    CurrentUser,
    ResendCodeRequest,
    ResendCodeResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from checkout_trust.services.verification_service import VerificationManager

router = APIRouter(prefix="/v1/verification", tags=["Verificación"])


@router.post("/verify", response_model=VerifyCodeResponse, summary="Verificar código OTP")
async def verify_code(
    body:    VerifyCodeRequest,
    db:      AsyncSession        = Depends(get_db_session),
    user:    CurrentUser         = Depends(get_current_user),
    manager: VerificationManager = Depends(get_verification_manager),
):
    result = await manager.verify(db, body.token, body.code, user_id=user.user_id)
    return VerifyCodeResponse(resume_payment_context=result.payment_context)


@router.post("/resend", response_model=ResendCodeResponse, summary="Reenviar código OTP")
async def resend_code(
    body:    ResendCodeRequest,
    db:      AsyncSession        = Depends(get_db_session),
    user:    CurrentUser         = Depends(get_current_user),
    manager: VerificationManager = Depends(get_verification_manager),
):
    ticket = await manager.resend(db, body.token, user_id=user.user_id, user_name=user.name)
    return ResendCodeResponse(expires_at=ticket.expires_at, masked_email=ticket.masked_email)


@router.get("/{token}", response_model=ChallengeStatusResponse, summary="Estado del desafío")
async def challenge_status(
    token:   str,
    db:      AsyncSession        = Depends(get_db_session),
    user:    CurrentUser         = Depends(get_current_user),
    manager: VerificationManager = Depends(get_verification_manager),
):
    return await manager.get_status(db, token, user.user_id)
