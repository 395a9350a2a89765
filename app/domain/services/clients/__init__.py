"""
HTTP clients for the commerce platforms and BTCPay Server
"""
from app.domain.services.clients.btcpay import BTCPayClient, PullPayment
from app.domain.services.clients.shopify import ShopifyClient, ShopifyCustomer
from app.domain.services.clients.square import SquareClient, SquareCustomer

__all__ = [
    "BTCPayClient",
    "PullPayment",
    "ShopifyClient",
    "ShopifyCustomer",
    "SquareClient",
    "SquareCustomer",
]
