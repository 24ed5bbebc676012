from .catalog import Seller, Product
from .orders import Order, OrderStatusHistory
from .payments import Payment, PaymentAnomaly
from .receipts import Receipt
from .notifications import NotificationOutbox

__all__ = [
    'Seller', 'Product',
    'Order', 'OrderStatusHistory',
    'Payment', 'PaymentAnomaly',
    'Receipt',
    'NotificationOutbox',
]
