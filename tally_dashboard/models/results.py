"""
Result Models
Tagged results returned across the Tally client boundary
"""

from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

from ..exceptions import ErrorKind, TallyError
from .voucher import LineItem, Voucher

T = TypeVar("T")


class RemoteResult(BaseModel):
    success: bool = True
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failed(cls, exc: TallyError, **fields: Any):
        return cls(success=False, error=exc.detail, error_kind=exc.kind, **fields)


class FetchResult(RemoteResult, Generic[T]):
    records: List[T] = Field(default_factory=list)
    skipped: int = 0


class ConnectivityResult(RemoteResult):
    connected: bool = False
    companies: List[str] = Field(default_factory=list)


class DetailResult(RemoteResult):
    voucher: Optional[Voucher] = None
    line_items: List[LineItem] = Field(default_factory=list)


class MutationResult(RemoteResult):
    remote_id: Optional[str] = None
    changed_count: int = 0


class ConversionMatch(BaseModel):
    matched: bool
    candidate: Optional[Voucher] = None
    reason: str = ""


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
