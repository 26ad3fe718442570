from .catalog import Category, Product, Warehouse, Supplier, Customer
from .inventory import StockRecord, Movement, StockAdjustment
from .purchasing import PurchaseOrder, PurchaseOrderItem
from .sales import SalesOrder, SalesOrderItem, Shipment
from .billing import Invoice, Payment
from .documents import DocumentSequence

__all__ = [
    'Category', 'Product', 'Warehouse', 'Supplier', 'Customer',
    'StockRecord', 'Movement', 'StockAdjustment',
    'PurchaseOrder', 'PurchaseOrderItem',
    'SalesOrder', 'SalesOrderItem', 'Shipment',
    'Invoice', 'Payment',
    'DocumentSequence',
]
