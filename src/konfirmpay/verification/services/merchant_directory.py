"""Merchant Directory - read-only merchant lookups."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from konfirmpay.models import Merchant
from konfirmpay.verification.errors import PersistenceError


@dataclass(frozen=True)
class MerchantProfile:
    """Public-facing merchant details, safe to disclose after verification."""

    merchant_id: str
    name: str
    paybill: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "paybill": self.paybill}


def _query(merchant_id: str):  # type: ignore[no-untyped-def]
    return select(Merchant.id, Merchant.name, Merchant.paybill).where(
        Merchant.id == merchant_id, Merchant.active.is_(True)
    )


class MerchantDirectory:
    """Reads merchant records. Never mutates them."""

    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, merchant_id: str) -> MerchantProfile | None:
        try:
            row = self.db.execute(_query(merchant_id)).first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not read merchant directory") from exc
        return MerchantProfile(merchant_id=row[0], name=row[1], paybill=row[2]) if row else None

    def get_collection_account(self, merchant_id: str) -> str | None:
        """Account the merchant leg is paid into."""
        profile = self.get_profile(merchant_id)
        return profile.paybill if profile else None


class AsyncMerchantDirectory:
    """Async version of MerchantDirectory."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_profile(self, merchant_id: str) -> MerchantProfile | None:
        try:
            result = await self.db.execute(_query(merchant_id))
            row = result.first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Could not read merchant directory") from exc
        return MerchantProfile(merchant_id=row[0], name=row[1], paybill=row[2]) if row else None

    async def get_collection_account(self, merchant_id: str) -> str | None:
        profile = await self.get_profile(merchant_id)
        return profile.paybill if profile else None
