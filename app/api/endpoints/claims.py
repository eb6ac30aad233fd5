from enum import Enum
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.messages import build_auth_message
from app.core.wallet_auth import validate_wallet_address
from app.db.session import get_db
import app.schemas.claims as schemas
from app.services.claim_store import ClaimStore
from app.services.nonce_service import NonceService
from app.services.registration import RegistrationOrchestrator, RegistrationRequest

router = APIRouter()
group_tags: List[str | Enum] = ["Claims"]

error_responses = {
    400: {"model": schemas.ErrorResponse, "description": "Missing fields or malformed signature"},
    403: {"model": schemas.ErrorResponse, "description": "Signature or nonce mismatch"},
    500: {"model": schemas.ErrorResponse, "description": "Storage failure, retry after cooldown"},
}


@router.post(
    "/nonce",
    tags=group_tags,
    response_model=schemas.NonceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: error_responses[400], 500: error_responses[500]},
)
def request_nonce(body: schemas.NonceRequest, db: Session = Depends(get_db)) -> schemas.NonceResponse:
    """Generate and store a nonce for a wallet address. Replaces any outstanding nonce."""
    nonce = NonceService(ClaimStore(db)).issue(body.wallet_address)
    return schemas.NonceResponse(nonce=nonce)


@router.post(
    "/auth/message",
    tags=group_tags,
    response_model=schemas.AuthMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: error_responses[400], 500: error_responses[500]},
)
def request_auth_message(body: schemas.NonceRequest, db: Session = Depends(get_db)) -> schemas.AuthMessageResponse:
    """Issue a nonce and return the sign-in message the wallet should sign."""
    address = validate_wallet_address(body.wallet_address)
    nonce = NonceService(ClaimStore(db)).issue(address)
    return schemas.AuthMessageResponse(message=build_auth_message(address, nonce=nonce), nonce=nonce)


@router.post(
    "/auth/verify",
    tags=group_tags,
    response_model=schemas.AuthVerifyResponse,
    responses=error_responses,
)
def verify_wallet(body: schemas.AuthVerifyRequest, db: Session = Depends(get_db)) -> schemas.AuthVerifyResponse:
    """Verify a signed sign-in message and consume its nonce."""
    orchestrator = RegistrationOrchestrator(ClaimStore(db))
    claim = orchestrator.authenticate(body.wallet_address, body.message, body.signature)
    address = validate_wallet_address(body.wallet_address)
    if claim is None:
        return schemas.AuthVerifyResponse(wallet_address=address)
    return schemas.AuthVerifyResponse(
        wallet_address=claim.wallet_address,
        registered=bool(claim.email_address),
        email=claim.email_address,
        discord=claim.discord_handle,
    )


@router.post(
    "/register",
    tags=group_tags,
    response_model=schemas.RegisterResponse,
    responses={
        **error_responses,
        409: {"model": schemas.ErrorResponse, "description": "Email or Discord handle already registered"},
    },
)
def register(body: schemas.RegisterRequest, db: Session = Depends(get_db)) -> schemas.RegisterResponse:
    """
    Register email/discord for a wallet.

    The signature is re-verified here and the message must carry the wallet's
    outstanding nonce. A wallet that is already registered only refreshes its
    signature; email and discord are never overwritten.
    """
    request = RegistrationRequest(
        wallet_address=body.wallet_address or "",
        email=body.email or "",
        discord=body.discord or "",
        message=body.message or "",
        signature=body.signature or "",
    )
    outcome = RegistrationOrchestrator(ClaimStore(db)).register(request)
    if outcome.error is not None:
        raise outcome.error
    return schemas.RegisterResponse(
        success=True,
        alreadyExisted=outcome.already_existed,
        email=outcome.email,
        discord=outcome.discord,
    )


@router.get(
    "/claims/{wallet_address}",
    tags=group_tags,
    response_model=schemas.ClaimResponse,
)
def get_claim(wallet_address: str, db: Session = Depends(get_db)) -> schemas.ClaimResponse:
    """Whether a wallet has registered. Claim details require /auth/verify."""
    claim = ClaimStore(db).get_by_wallet(validate_wallet_address(wallet_address))
    if claim is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Claim not found")
    return schemas.ClaimResponse.from_record({
        "wallet_address": claim.wallet_address,
        "registered": bool(claim.email_address),
    })
