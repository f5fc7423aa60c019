from .tables import Table, WaiterCall
from .orders import MenuItem, Order, OrderItem
from .payments import Payment

__all__ = [
    'Table', 'WaiterCall',
    'MenuItem', 'Order', 'OrderItem',
    'Payment',
]
