"""API schemas for draw entry endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.draws import DrawEntryResult
from ..entitlements.models import DrawEntry, EntrySource
from .membership import CreditBalanceResponse


class DrawEntryResponse(BaseModel):
    entry_id: str = Field(alias="entryId")
    draw_id: str = Field(alias="drawId")
    order_no: str = Field(alias="orderNo")
    credits_spent: int = Field(alias="creditsSpent")
    source: EntrySource
    created_at: datetime = Field(alias="createdAt")
    replayed: bool = False
    credits: CreditBalanceResponse

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: DrawEntryResult) -> "DrawEntryResponse":
        entry = result.entry
        return cls(
            entry_id=entry.entry_id,
            draw_id=entry.draw_id,
            order_no=entry.order_no,
            credits_spent=entry.credits_spent,
            source=entry.source,
            created_at=entry.created_at,
            replayed=result.replayed,
            credits=CreditBalanceResponse.from_balance(result.balance),
        )


class DrawEntrySummary(BaseModel):
    entry_id: str = Field(alias="entryId")
    draw_id: str = Field(alias="drawId")
    order_no: str = Field(alias="orderNo")
    credits_spent: int = Field(alias="creditsSpent")
    source: EntrySource
    is_refunded: bool = Field(alias="isRefunded")
    invalidated_at: Optional[datetime] = Field(default=None, alias="invalidatedAt")
    is_valid: bool = Field(alias="isValid")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: DrawEntry) -> "DrawEntrySummary":
        return cls(
            entry_id=entry.entry_id,
            draw_id=entry.draw_id,
            order_no=entry.order_no,
            credits_spent=entry.credits_spent,
            source=entry.source,
            is_refunded=entry.is_refunded,
            invalidated_at=entry.invalidated_at,
            is_valid=entry.is_valid,
            created_at=entry.created_at,
        )


class DrawEntryListResponse(BaseModel):
    entries: List[DrawEntrySummary]
