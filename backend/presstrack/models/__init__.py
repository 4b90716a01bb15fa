from .orders import OrderItem
from .inventory import PaperStockItem, InventoryTransaction, JobMaterialAllocation
from .timeline import TimelineEvent

__all__ = [
    'OrderItem',
    'PaperStockItem', 'InventoryTransaction', 'JobMaterialAllocation',
    'TimelineEvent',
]
