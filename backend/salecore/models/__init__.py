from .tenancy import Organization, Location
from .catalog import Product, ProductVariant
from .inventory import StockBatch, BatchAllocation
from .customers import Customer, LoyaltyAccount, LoyaltyTransaction
from .sales import Sale, SaleItem, PaymentTransaction, SaleEvent
from .documents import DocumentSequence

__all__ = [
    'Organization', 'Location',
    'Product', 'ProductVariant',
    'StockBatch', 'BatchAllocation',
    'Customer', 'LoyaltyAccount', 'LoyaltyTransaction',
    'Sale', 'SaleItem', 'PaymentTransaction', 'SaleEvent',
    'DocumentSequence',
]
