"""Merchant directory model.

Merchant records are administered elsewhere; this service only reads them.
"""

from __future__ import annotations

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from konfirmpay.models.base import Base, TimestampMixin


class Merchant(TimestampMixin, Base):
    """A merchant whose identity is revealed after verification."""

    __tablename__ = "merchant"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    paybill: Mapped[str] = mapped_column(String(20), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
