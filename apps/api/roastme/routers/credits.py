"""
Credits Router
Credit packages, balance, checkout and ledger
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from roastme.core.config import settings
from roastme.core.database import get_db
from roastme.core.dependencies import get_current_user
from roastme.core.errors import PaymentError
from roastme.core.exceptions import APIError, AuthenticationError, ValidationError
from roastme.models.db import User
from roastme.services.credits import CREDIT_PACKAGES, credits_service, product_id_for
from roastme.services.payments import payments_service

router = APIRouter()


# ==================== Response Models ====================

class CreditPackage(BaseModel):
    id: str
    name: str
    description: str
    credits: int
    price: int  # cents
    product_id: Optional[str]


class PackagesResponse(BaseModel):
    provider: str
    packages: list[CreditPackage]


class BalanceResponse(BaseModel):
    credits: int
    plan: str
    images_created: int
    is_anonymous: bool


class TransactionResponse(BaseModel):
    id: int
    amount: int
    balance_after: int
    transaction_type: str
    provider: Optional[str]
    description: Optional[str]
    created_at: datetime


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str
    provider: str


# ==================== Request Models ====================

class PurchaseRequest(BaseModel):
    package_id: str


# ==================== Endpoints ====================

@router.get("/packages", response_model=PackagesResponse)
async def get_packages():
    """Credit packages with the product id of the active provider/mode"""
    provider = settings.payment_provider
    return PackagesResponse(
        provider=provider,
        packages=[
            CreditPackage(id=package_id, product_id=product_id_for(package_id, provider), **info)
            for package_id, info in CREDIT_PACKAGES.items()
        ],
    )


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(user: User = Depends(get_current_user)):
    return BalanceResponse(
        credits=user.credits,
        plan=user.plan,
        images_created=user.images_created,
        is_anonymous=user.is_anonymous,
    )


@router.post("/purchase", response_model=CheckoutResponse)
async def purchase_credits(
    request: PurchaseRequest,
    user: User = Depends(get_current_user),
):
    """
    Start a checkout for a credit package

    Signed-in users only; credits arrive through the payment webhook.
    """
    if user.is_anonymous:
        raise AuthenticationError("Sign in to buy credits")
    if request.package_id not in CREDIT_PACKAGES:
        raise ValidationError(
            f"Unknown package: {request.package_id}",
            details={"available": list(CREDIT_PACKAGES)},
        )

    try:
        session = await payments_service.create_checkout(
            request.package_id, user.id, email=user.email
        )
    except PaymentError as e:
        raise APIError(
            status_code=502,
            error_code="PAYMENT_ERROR",
            message=e.message,
            details=e.details,
        )

    return CheckoutResponse(
        checkout_url=session.url, session_id=session.id, provider=session.provider
    )


@router.get("/transactions", response_model=TransactionListResponse)
async def get_transactions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    transactions, total = await credits_service.get_transactions(db, user.id, limit, offset)
    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                id=t.id,
                amount=t.amount,
                balance_after=t.balance_after,
                transaction_type=t.transaction_type,
                provider=t.provider,
                description=t.description,
                created_at=t.created_at,
            )
            for t in transactions
        ],
        total=total,
    )
