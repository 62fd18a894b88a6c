"""
Credits Service
User rows, credit balance, plans and the credit ledger
"""

import uuid
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from roastme.core.config import settings
from roastme.core.errors import ErrorCode, IdentityError
from roastme.core.identity import VerifiedIdentity
from roastme.models.db import Character, CreditTransaction, ImageUpload, User
from roastme.models.dto import Plan

logger = structlog.get_logger()


# Credit packages (price in cents)
CREDIT_PACKAGES = {
    "credits_20": {
        "name": "Starter Pack",
        "description": "20 roast generations",
        "credits": 20,
        "price": 500,
    },
    "credits_50": {
        "name": "Popular Pack",
        "description": "50 roast generations",
        "credits": 50,
        "price": 1000,
    },
    "credits_100": {
        "name": "Best Value",
        "description": "100 roast generations",
        "credits": 100,
        "price": 1500,
    },
}

# Plans that generate without spending credits
UNMETERED_PLANS = {Plan.pro.value, Plan.unlimited.value}


def product_id_for(package_id: str, provider: Optional[str] = None) -> Optional[str]:
    """Provider product id for a package in the configured mode"""
    provider = provider or settings.payment_provider
    credits = CREDIT_PACKAGES[package_id]["credits"]
    if provider == "stripe":
        field = f"stripe_product_{credits}_credits_{settings.stripe_mode}"
    else:
        field = f"polar_product_{credits}_credits_{settings.polar_server}"
    return getattr(settings, field, None)


def package_for_product(product_id: str) -> Optional[str]:
    for package_id in CREDIT_PACKAGES:
        for provider in ("stripe", "polar"):
            if product_id and product_id_for(package_id, provider) == product_id:
                return package_id
    return None


class CreditsService:
    """Credit and plan management"""

    async def get_user(self, db: AsyncSession, user_id: str) -> Optional[User]:
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_or_create_user(self, db: AsyncSession, user_key: str) -> User:
        """Look up a user, creating an anonymous one with starter credits"""
        user = await self.get_user(db, user_key)
        if user:
            return user

        user = User(
            id=user_key,
            is_anonymous=True,
            credits=settings.anonymous_credits,
            images_created=0,
            plan=Plan.free.value,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # created concurrently by another request
            await db.rollback()
            return await self.get_user(db, user_key)

        await self._record_transaction(
            db=db,
            user_id=user.id,
            amount=settings.anonymous_credits,
            balance_after=settings.anonymous_credits,
            transaction_type="bonus",
            description="Welcome credits",
        )
        logger.info("Anonymous user created", user_id=user.id[:8] + "...")
        return user

    async def get_credits(self, db: AsyncSession, user_id: str) -> int:
        result = await db.execute(select(User.credits).where(User.id == user_id))
        return result.scalar_one_or_none() or 0

    async def has_credits(self, db: AsyncSession, user: User, required: int = 1) -> bool:
        if user.plan in UNMETERED_PLANS:
            return True
        return user.credits >= required

    async def charge_generation(
        self,
        db: AsyncSession,
        user: User,
        reference_id: Optional[str] = None,
        commit: bool = True,
    ) -> bool:
        """
        Spend one credit for a generation.

        Free plan: conditional UPDATE (credits >= 1) so concurrent requests
        cannot overdraw. Pro/unlimited: no debit. Every plan counts the image.

        Returns:
            False when the user has no credits left (nothing is changed)
        """
        if user.plan in UNMETERED_PLANS:
            await db.execute(
                update(User)
                .where(User.id == user.id)
                .values(images_created=User.images_created + 1)
            )
            if commit:
                await db.commit()
            await db.refresh(user)
            return True

        stmt = (
            update(User)
            .where(User.id == user.id, User.credits >= 1)
            .values(
                credits=User.credits - 1,
                images_created=User.images_created + 1,
            )
        )
        result = await db.execute(stmt)
        affected = result.rowcount if hasattr(result, "rowcount") else 0

        if affected <= 0:
            return False

        await db.refresh(user)
        db.add(
            CreditTransaction(
                user_id=user.id,
                amount=-1,
                balance_after=user.credits,
                transaction_type="usage",
                description="Character generation",
                reference_id=reference_id,
            )
        )
        if commit:
            await db.commit()
        return True

    async def add_credits(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        transaction_type: str = "purchase",
        description: str = "Credit purchase",
        provider: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Top up credits.

        Returns:
            New balance, or None when this (provider, reference_id) was
            already applied
        """
        if provider and reference_id:
            existing = await db.execute(
                select(CreditTransaction.id).where(
                    CreditTransaction.provider == provider,
                    CreditTransaction.reference_id == reference_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                logger.info(
                    "Duplicate credit grant ignored", provider=provider, reference_id=reference_id
                )
                return None

        await db.execute(
            update(User).where(User.id == user_id).values(credits=User.credits + amount)
        )
        balance = await self.get_credits(db, user_id)
        db.add(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                balance_after=balance,
                transaction_type=transaction_type,
                provider=provider,
                description=description,
                reference_id=reference_id,
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.info(
                "Duplicate credit grant ignored", provider=provider, reference_id=reference_id
            )
            return None

        logger.info("Credits added", user_id=user_id, amount=amount, balance=balance)
        return balance

    async def record_failed_payment(
        self,
        db: AsyncSession,
        user_id: str,
        provider: str,
        reference_id: Optional[str],
        description: str,
    ) -> None:
        balance = await self.get_credits(db, user_id)
        try:
            await self._record_transaction(
                db=db,
                user_id=user_id,
                amount=0,
                balance_after=balance,
                transaction_type="failed",
                description=description[:200],
                provider=provider,
                reference_id=reference_id,
            )
        except IntegrityError:
            await db.rollback()

    async def set_plan(
        self,
        db: AsyncSession,
        user_id: str,
        plan: Plan,
        polar_customer_id: Optional[str] = None,
    ) -> None:
        values = {"plan": Plan(plan).value}
        if polar_customer_id:
            values["polar_customer_id"] = polar_customer_id
        await db.execute(update(User).where(User.id == user_id).values(**values))
        await db.commit()
        logger.info("Plan changed", user_id=user_id, plan=values["plan"])

    async def create_account(
        self,
        db: AsyncSession,
        email: Optional[str],
        google_id: Optional[str] = None,
        display_name: Optional[str] = None,
        starting_credits: Optional[int] = None,
    ) -> User:
        """Create an authenticated user with the signup credit grant"""
        credits = settings.authenticated_credits if starting_credits is None else starting_credits
        user = User(
            id=f"user_{uuid.uuid4().hex}",
            is_anonymous=False,
            email=email,
            google_id=google_id,
            display_name=display_name,
            credits=credits,
            images_created=0,
            plan=Plan.free.value,
        )
        db.add(user)
        await db.flush()
        if credits:
            db.add(
                CreditTransaction(
                    user_id=user.id,
                    amount=credits,
                    balance_after=credits,
                    transaction_type="bonus",
                    description="Signup credits",
                )
            )
        await db.commit()
        return user

    async def find_account(
        self, db: AsyncSession, email: Optional[str] = None, google_id: Optional[str] = None
    ) -> Optional[User]:
        if google_id:
            result = await db.execute(select(User).where(User.google_id == google_id))
            user = result.scalar_one_or_none()
            if user:
                return user
        if email:
            result = await db.execute(select(User).where(User.email == email.lower()))
            return result.scalar_one_or_none()
        return None

    async def link_account(
        self,
        db: AsyncSession,
        caller: User,
        identity: VerifiedIdentity,
        display_name: Optional[str] = None,
    ) -> tuple[User, int, int]:
        """
        Sign an anonymous caller in to the account its verified identity
        owns (creating it on first sign-in), then move the anonymous
        characters, uploads and unspent credits onto it.

        Raises IdentityError(ACCOUNT_CONFLICT) when the account is bound to
        a different Google identity.

        Returns:
            (account, migrated characters, migrated credits)
        """
        email = identity.email
        google_id = identity.google_id
        account = await self.find_account(db, email=email, google_id=google_id)
        if account is None:
            account = await self.create_account(db, email, google_id, display_name)
        elif google_id and account.google_id and account.google_id != google_id:
            raise IdentityError(
                "This e-mail is linked to a different Google account",
                code=ErrorCode.ACCOUNT_CONFLICT,
            )
        elif google_id and not account.google_id:
            account.google_id = google_id
            await db.commit()

        if not caller.is_anonymous or caller.id == account.id:
            return account, 0, 0

        result = await db.execute(
            update(Character).where(Character.user_id == caller.id).values(user_id=account.id)
        )
        migrated_characters = result.rowcount or 0
        await db.execute(
            update(ImageUpload).where(ImageUpload.user_id == caller.id).values(user_id=account.id)
        )

        migrated_credits = max(caller.credits, 0)
        await db.execute(
            update(User).where(User.id == caller.id).values(credits=0, images_created=0)
        )
        await db.execute(
            update(User)
            .where(User.id == account.id)
            .values(
                credits=User.credits + migrated_credits,
                images_created=User.images_created + caller.images_created,
            )
        )
        if migrated_credits:
            balance = await self.get_credits(db, account.id)
            db.add(
                CreditTransaction(
                    user_id=account.id,
                    amount=migrated_credits,
                    balance_after=balance,
                    transaction_type="bonus",
                    description="Carried over from anonymous session",
                    reference_id=caller.id,
                )
            )
        await db.commit()
        await db.refresh(account)

        logger.info(
            "Anonymous session migrated",
            account_id=account.id,
            characters=migrated_characters,
            credits=migrated_credits,
        )
        return account, migrated_characters, migrated_credits

    async def get_transactions(
        self, db: AsyncSession, user_id: str, limit: int = 20, offset: int = 0
    ) -> tuple[list[CreditTransaction], int]:
        total = await db.scalar(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.user_id == user_id
            )
        )
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total or 0

    async def _record_transaction(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int,
        balance_after: int,
        transaction_type: str,
        description: Optional[str] = None,
        provider: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> CreditTransaction:
        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            transaction_type=transaction_type,
            provider=provider,
            description=description,
            reference_id=reference_id,
        )
        db.add(transaction)
        await db.commit()
        return transaction


# Singleton instance
credits_service = CreditsService()
