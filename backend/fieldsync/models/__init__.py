from .tenancy import Tenant, TenantSetting, ReconciliationPeriod
from .records import ServerRecord, MergeHistoryEntry, StockLevel, DeviceCursor

__all__ = [
    'Tenant', 'TenantSetting', 'ReconciliationPeriod',
    'ServerRecord', 'MergeHistoryEntry', 'StockLevel', 'DeviceCursor',
]
