from .catalog import Operator, Product
from .inventory import Movement, MovementLotAllocation, Lot
from .carts import Cart, CartLine, CartLineLot
from .notifications import Notification

__all__ = [
    'Operator', 'Product',
    'Movement', 'MovementLotAllocation', 'Lot',
    'Cart', 'CartLine', 'CartLineLot',
    'Notification',
]
