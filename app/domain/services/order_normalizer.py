"""
Order Normalizer - platform payloads → canonical Transaction

One function per platform, chosen by an explicit ``Platform`` tag.
Unparseable payloads and payloads without an order identifier yield
``None``; normalization never raises.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable

from app.core.logging import get_logger
from app.core.validation import AmountValidator, CurrencyValidator, EmailValidator
from app.db.database import utcnow
from app.domain.models.transaction import Platform, Transaction
from app.domain.services.clients.shopify import ShopifyClient
from app.domain.services.clients.square import SquareClient

logger = get_logger(__name__)

SQUARE_PAYMENT_EVENTS = frozenset({"payment.created", "payment.updated"})
SQUARE_COMPLETED_STATUS = "COMPLETED"


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string or unix seconds → naive UTC; missing/invalid → now"""
    if value is None or value == "":
        return utcnow()
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # BTCPay שולח createdTime בשניות
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return utcnow()
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _full_name(first: Any, last: Any) -> str:
    return f"{_text(first)} {_text(last)}".strip()


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------

async def normalize_shopify_order(
    payload: dict,
    store_id: str,
    shopify_client: ShopifyClient | None = None,
) -> Transaction | None:
    """
    Shopify ``orders/paid`` (or ``orders/create``) payload.

    The order is either the body itself or nested under ``"order"``. With a
    configured client, missing contact fields and a missing total are filled
    from the Admin API; lookup errors keep the webhook values.
    """
    order = payload.get("order") or payload
    if not isinstance(order, dict):
        return None

    order_id = _text(order.get("id")) or _text(order.get("order_id"))
    if not order_id:
        return None

    customer = order.get("customer") if isinstance(order.get("customer"), dict) else {}
    order_number = (
        _text(order.get("order_number"))
        or _text(order.get("number"))
        or order_id
    )

    amount = AmountValidator.parse(order.get("total_price"))
    if amount is None:
        amount = Decimal("0")

    transaction = Transaction(
        transaction_id=order_id,
        order_id=order_number,
        amount=amount,
        currency=CurrencyValidator.normalize(order.get("currency")),
        platform=Platform.SHOPIFY,
        timestamp=_parse_timestamp(order.get("processed_at") or order.get("created_at")),
        customer_email=_text(order.get("email")) or _text(customer.get("email")),
        customer_phone=_text(order.get("phone")) or _text(customer.get("phone")),
        customer_name=_full_name(customer.get("first_name"), customer.get("last_name")),
        metadata={"storeId": store_id, "shopifyOrderId": order_id},
    )

    if shopify_client is None:
        return transaction

    customer_id = _text(order.get("customer_id")) or _text(customer.get("id"))
    if customer_id and not (transaction.customer_email and transaction.customer_phone and transaction.customer_name):
        try:
            info = await shopify_client.get_customer(customer_id)
        except Exception as e:
            logger.warning(
                "Shopify customer lookup failed, using webhook data",
                extra_data={"store_id": store_id, "order_id": order_id, "error": str(e)},
            )
            info = None
        if info is not None:
            transaction = replace(
                transaction,
                customer_email=transaction.customer_email or info.email,
                customer_phone=transaction.customer_phone or info.phone,
                customer_name=transaction.customer_name or info.full_name,
            )

    if transaction.amount == 0 or not transaction.customer_email:
        try:
            order_info = await shopify_client.get_order(order_id)
        except Exception as e:
            logger.warning(
                "Shopify order lookup failed, using webhook data",
                extra_data={"store_id": store_id, "order_id": order_id, "error": str(e)},
            )
            order_info = None
        if order_info is not None:
            transaction = replace(
                transaction,
                amount=transaction.amount or order_info.total_amount,
                customer_email=transaction.customer_email or order_info.customer_email,
            )

    return transaction


# ---------------------------------------------------------------------------
# Square
# ---------------------------------------------------------------------------

def is_ignorable_square_event(payload: dict) -> bool:
    """Payment events for payments that are not COMPLETED carry no reward"""
    if not isinstance(payload, dict) or payload.get("type") not in SQUARE_PAYMENT_EVENTS:
        return False
    payment = ((payload.get("data") or {}).get("object") or {}).get("payment")
    return isinstance(payment, dict) and payment.get("status") != SQUARE_COMPLETED_STATUS


def _square_money(money: Any) -> tuple[Decimal, str] | None:
    """Square amounts are integer minor units (cents)"""
    if not isinstance(money, dict):
        return Decimal("0"), "USD"
    cents = AmountValidator.parse(money.get("amount"))
    if cents is None and money.get("amount") is not None:
        return None
    amount = (cents or Decimal("0")) / Decimal("100")
    return amount, CurrencyValidator.normalize(money.get("currency"))


def _normalize_square_payment(payment: dict, store_id: str) -> Transaction | None:
    payment_id = _text(payment.get("id"))
    if not payment_id or payment.get("status") != SQUARE_COMPLETED_STATUS:
        return None

    money = _square_money(payment.get("amount_money") or payment.get("total_money"))
    if money is None:
        return None
    amount, currency = money

    order_id = _text(payment.get("order_id")) or None
    metadata = {"storeId": store_id, "squarePaymentId": payment_id}
    if order_id:
        metadata["squareOrderId"] = order_id

    return Transaction(
        transaction_id=payment_id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        platform=Platform.SQUARE,
        timestamp=_parse_timestamp(payment.get("updated_at") or payment.get("created_at")),
        customer_email=_text(payment.get("receipt_email")) or _text(payment.get("buyer_email_address")),
        customer_phone=_text(payment.get("receipt_phone")),
        metadata=metadata,
    )


async def normalize_square_event(
    payload: dict,
    store_id: str,
    square_client: SquareClient | None = None,
) -> Transaction | None:
    """
    Square order event (``data.object.order``) or completed payment event
    (``data.object.payment``).

    For orders with a ``customer_id`` one ``GET /v2/customers/{id}`` call
    fills the contact fields when a client is configured. A failed lookup
    leaves them empty, then ``email_address`` on the order is used.
    """
    data_object = (payload.get("data") or {}).get("object") or {}
    if not isinstance(data_object, dict):
        return None

    if payload.get("type") in SQUARE_PAYMENT_EVENTS and isinstance(data_object.get("payment"), dict):
        return _normalize_square_payment(data_object["payment"], store_id)

    order = data_object.get("order") or payload.get("order")
    if not isinstance(order, dict):
        return None

    order_id = _text(order.get("id"))
    if not order_id:
        return None

    money = _square_money(order.get("total_money"))
    if money is None:
        return None
    amount, currency = money

    email = phone = name = ""
    customer_id = _text(order.get("customer_id"))
    if customer_id and square_client is not None:
        try:
            customer = await square_client.get_customer(customer_id)
        except Exception as e:
            logger.warning(
                "Square customer lookup failed, continuing without contact details",
                extra_data={"store_id": store_id, "order_id": order_id, "error": str(e)},
            )
            customer = None
        if customer is not None:
            email, phone, name = customer.email, customer.phone, customer.full_name

    if not email:
        email = _text(order.get("email_address")) or _text(order.get("receipt_email"))

    return Transaction(
        transaction_id=order_id,
        order_id=_text(order.get("reference_id")) or order_id,
        amount=amount,
        currency=currency,
        platform=Platform.SQUARE,
        timestamp=_parse_timestamp(order.get("closed_at") or order.get("created_at")),
        customer_email=email,
        customer_phone=phone,
        customer_name=name,
        metadata={"storeId": store_id, "squareOrderId": order_id},
    )


# ---------------------------------------------------------------------------
# BTCPay
# ---------------------------------------------------------------------------

def normalize_btcpay_invoice(invoice: dict, store_id: str) -> Transaction | None:
    """Greenfield invoice object; contact fields come from its metadata"""
    invoice_id = _text(invoice.get("id"))
    if not invoice_id:
        return None

    amount = AmountValidator.parse(invoice.get("amount"))
    if amount is None:
        return None

    metadata = invoice.get("metadata") if isinstance(invoice.get("metadata"), dict) else {}
    order_id = _text(metadata.get("orderId")) or None

    return Transaction(
        transaction_id=invoice_id,
        order_id=order_id,
        amount=amount,
        currency=CurrencyValidator.normalize(invoice.get("currency")),
        platform=Platform.BTCPAY,
        timestamp=_parse_timestamp(invoice.get("createdTime")),
        customer_email=_text(metadata.get("buyerEmail")),
        customer_phone=_text(metadata.get("buyerPhone")),
        customer_name=_text(metadata.get("buyerName")),
        metadata={"storeId": store_id, "invoiceId": invoice_id},
    )


async def _normalize_btcpay(payload: dict, store_id: str, **_clients) -> Transaction | None:
    return normalize_btcpay_invoice(payload, store_id)


async def _normalize_shopify(payload: dict, store_id: str, **clients) -> Transaction | None:
    return await normalize_shopify_order(payload, store_id, clients.get("shopify_client"))


async def _normalize_square(payload: dict, store_id: str, **clients) -> Transaction | None:
    return await normalize_square_event(payload, store_id, clients.get("square_client"))


_NORMALIZERS: dict[Platform, Callable[..., Awaitable[Transaction | None]]] = {
    Platform.SHOPIFY: _normalize_shopify,
    Platform.SQUARE: _normalize_square,
    Platform.BTCPAY: _normalize_btcpay,
}


async def normalize(
    platform: Platform,
    payload: Any,
    store_id: str,
    square_client: SquareClient | None = None,
    shopify_client: ShopifyClient | None = None,
) -> Transaction | None:
    """Normalize ``payload`` for ``platform``; ``None`` when it cannot be used"""
    if not isinstance(payload, dict):
        return None

    try:
        transaction = await _NORMALIZERS[platform](
            payload,
            store_id,
            square_client=square_client,
            shopify_client=shopify_client,
        )
    except Exception as e:
        logger.warning(
            "Payload could not be normalized",
            extra_data={"platform": platform.value, "store_id": store_id, "error": str(e)},
        )
        return None

    if transaction is not None:
        logger.debug(
            "Transaction normalized",
            extra_data={
                "platform": platform.value,
                "store_id": store_id,
                "transaction_id": transaction.transaction_id,
                "amount": str(transaction.amount),
                "currency": transaction.currency,
                "customer_email": EmailValidator.mask(transaction.customer_email),
            },
        )
    return transaction
