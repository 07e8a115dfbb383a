"""
Voucher Models
Normalized voucher records as the rest of the application sees them
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class LineItem(BaseModel):
    item_name: str
    quantity: float = 0.0
    unit: str = ""
    rate: float = 0.0
    amount: float = 0.0
    godown: str = ""


class Voucher(BaseModel):
    """One Tally voucher; global_id (GUID) is the existence key"""
    global_id: str
    remote_id: str = ""
    change_sequence: int = 0
    kind: str = ""
    number: str = ""
    date: str = ""
    counterparty_name: str = ""
    amount: float = 0.0
    note: str = ""
    created_at: str = ""
    last_modified_at: str = ""
    entry_time: str = ""
    udf_payment_total: float = 0.0
    pay_cash: float = 0.0
    pay_qr: float = 0.0
    pay_cheque: float = 0.0
    pay_discount: float = 0.0
    pay_esewa: float = 0.0
    pay_bank_deposit: float = 0.0
    # Local state, maintained by the cache store
    is_deleted: bool = False
    delete_reason: Optional[str] = None
    is_converted: bool = False
    converted_to_kind: Optional[str] = None
    audit_flag: bool = False
    audit_reason: Optional[str] = None
    line_items: List[LineItem] = Field(default_factory=list)


class VoucherIdentity(BaseModel):
    global_id: str
    remote_id: str = ""
    kind: str = ""
    number: str = ""


class VoucherDraft(BaseModel):
    """A voucher to be created in Tally"""
    counterparty_name: str
    kind: str = "Sales"
    date: Optional[str] = None
    note: str = "Invoice created via Dashboard"
    sales_ledger: str = "1 Sales A/c"
    godown: str = "Main Location"
    items: List[LineItem] = Field(default_factory=list)

    @property
    def total(self) -> float:
        return sum(item.amount or item.quantity * item.rate for item in self.items)


class VoucherAlteration(BaseModel):
    """Replacement line items for an existing voucher"""
    remote_id: str
    global_id: str = ""
    kind: str
    number: str = ""
    date: str
    counterparty_name: str
    sales_ledger: str = "1 Sales A/c"
    items: List[LineItem] = Field(default_factory=list)


class LocalStatusUpdate(BaseModel):
    """Fields staff record on the dashboard; sync never overwrites them"""
    payment_status: Optional[str] = None
    amount_received: Optional[float] = None
    dispatch_status: Optional[str] = None
    audit_status: Optional[str] = None
