"""
Master Data Models
Pydantic models for stock items and party ledgers
"""

from pydantic import BaseModel


class StockItem(BaseModel):
    name: str
    parent: str = ""
    base_units: str = ""
    opening_balance: float = 0.0
    closing_balance: float = 0.0
    closing_value: float = 0.0
    closing_rate: float = 0.0
    hsn_code: str = ""
    gst_rate: float = 0.0
    standard_cost: float = 0.0
    selling_price: float = 0.0
    change_sequence: int = 0


class Party(BaseModel):
    name: str
    parent: str = ""
    group_type: str = "debtor"
    balance: float = 0.0
    address: str = ""
    state: str = ""
    gstin: str = ""
    change_sequence: int = 0
