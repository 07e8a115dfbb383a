"""
Constants Module
Application-wide constants
"""

APP_NAME = "Tally Dashboard Sync"
APP_VERSION = "1.0.0"

ALREADY_SYNCING = "already syncing"


class SyncStatus:
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class EntityClass:
    """Keys of the sync_cursor table"""
    VOUCHERS = "vouchers"
    STOCK_ITEMS = "stock_items"
    PARTIES = "parties"


class EventKind:
    VOUCHER_CREATED = "voucherCreated"
    VOUCHER_DELETED = "voucherDeleted"
    VOUCHER_CONVERTED = "voucherConverted"
    VOUCHER_KIND_CHANGED = "voucherKindChanged"
    SYNC_PROGRESS = "syncProgress"
    SYNC_COMPLETED = "syncCompleted"
    SYNC_FAILED = "syncFailed"
    PENDING_VOUCHER_PUSHED = "pendingVoucherPushed"


class FullSyncStatus:
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class PendingStatus:
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class AuditReason:
    UDF_CHANGE = "udf_change"
    AUDITED_EDIT = "audited_edit"
    POST_DATED = "post_dated"


class HealthStatus:
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"
