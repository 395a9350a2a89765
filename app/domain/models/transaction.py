"""
Canonical transaction shared by every inbound source
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


class Platform(str, enum.Enum):
    SHOPIFY = "shopify"
    SQUARE = "square"
    BTCPAY = "btcpay"


TEST_TRANSACTION_PREFIX = "TEST_"


@dataclass(frozen=True)
class Transaction:
    """
    One purchase, normalized from a Shopify order, Square order/payment or
    BTCPay invoice. Missing optional contact fields are empty strings.
    """
    transaction_id: str
    amount: Decimal
    currency: str
    platform: Platform
    timestamp: datetime
    order_id: str | None = None
    customer_email: str = ""
    customer_phone: str = ""
    customer_name: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_test(self) -> bool:
        return self.transaction_id.startswith(TEST_TRANSACTION_PREFIX)

    @property
    def invoice_id(self) -> str | None:
        """BTCPay invoice id when the transaction came from an invoice"""
        if self.platform == Platform.BTCPAY:
            return self.transaction_id
        return self.metadata.get("invoiceId") or None
