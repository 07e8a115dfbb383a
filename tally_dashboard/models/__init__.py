from .voucher import LineItem, Voucher, VoucherIdentity, VoucherDraft, VoucherAlteration, LocalStatusUpdate
from .master import StockItem, Party
from .results import (
    RemoteResult,
    FetchResult,
    ConnectivityResult,
    DetailResult,
    MutationResult,
    ConversionMatch,
    UpsertOutcome,
)
