"""
Checkout against Stripe.

Turns a cart into a pending order plus a Stripe PaymentIntent, reusing a
recent matching order when the customer submits checkout more than once, and
confirms orders when the gateway redirects back after payment.
"""
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import stripe
import structlog
from bson import ObjectId
from fastapi import HTTPException
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import utcnow
from schemas import DeliveryOption, Order, OrderStatus, PaymentStatus

logger = structlog.get_logger(__name__)

CURRENCY = "gbp"
STORE_NAME = "Dymchurch Crafters"
PENDING_REUSE_WINDOW = timedelta(minutes=10)
RACE_LOOKUP_WINDOW = timedelta(minutes=5)
TERMINAL_INTENT_STATUSES = {"succeeded", "canceled"}


def _stripe_client():
    key = os.getenv("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not set")
    stripe.api_key = key
    return stripe


def format_amount_for_stripe(amount: float) -> int:
    return int(round(amount * 100))


def delivery_fee_for(method: str) -> float:
    if method == DeliveryOption.pickup.value:
        return 0.0
    return float(os.getenv("DELIVERY_FEE", "3.50"))


def cart_signature(items: List[Dict[str, Any]]) -> str:
    """Order-independent fingerprint of (product, quantity) pairs."""
    return "|".join(sorted(f"{i['product_id']}:{i['quantity']}" for i in items))


def build_line_items(db: Database, items: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], float]:
    line_items = []
    subtotal = 0.0
    for item in items:
        product_id = item["product_id"]
        product = None
        if ObjectId.is_valid(product_id):
            product = db["product"].find_one({"_id": ObjectId(product_id)}, {"embedding": 0})
        if not product:
            raise HTTPException(status_code=404, detail=f"Product not found: {product_id}")
        if not product.get("in_stock", True):
            raise HTTPException(status_code=400, detail=f"{product['name']} is out of stock")

        crafter = None
        if ObjectId.is_valid(product.get("crafter_id", "")):
            crafter = db["crafter"].find_one({"_id": ObjectId(product["crafter_id"])})
        crafter_name = crafter["name"] if crafter else product.get("crafter_name") or "Unknown Crafter"

        price = float(product["price"])
        subtotal += price * item["quantity"]
        line_items.append({
            "product_id": str(product["_id"]),
            "product_name": product["name"],
            "quantity": item["quantity"],
            "price": price,
            "crafter_id": product.get("crafter_id"),
            "crafter_name": crafter_name,
        })
    return line_items, round(subtotal, 2)


def next_order_number(db: Database) -> Tuple[str, str, int]:
    """Return (order_number, order_date, order_sequence) for today.

    Sequences restart at 1 each UTC day and count up from the highest
    sequence already stored for that day.
    """
    order_date = utcnow().strftime("%Y%m%d")
    latest = db["order"].find_one({"order_date": order_date}, sort=[("order_sequence", -1)])
    sequence = (latest["order_sequence"] + 1) if latest else 1
    return f"ORD-{order_date}-{sequence:04d}", order_date, sequence


def find_recent_pending_order(db: Database, customer_email: str, total: float, signature: str, window: timedelta) -> Optional[dict]:
    return db["order"].find_one(
        {
            "customer_email": customer_email,
            "payment_status": PaymentStatus.pending.value,
            "total": total,
            "cart_signature": signature,
            "created_at": {"$gte": utcnow() - window},
        },
        sort=[("created_at", -1)],
    )


def _is_order_number_conflict(exc: DuplicateKeyError) -> bool:
    key_pattern = (exc.details or {}).get("keyPattern") or {}
    # no key pattern reported: order_number is the only unique key we write
    return not key_pattern or "order_number" in key_pattern


def create_intent(order: dict, total: float) -> Any:
    client = _stripe_client()
    return client.PaymentIntent.create(
        amount=format_amount_for_stripe(total),
        currency=CURRENCY,
        description=f"Order {order['order_number']} - {STORE_NAME}",
        metadata={
            "order_id": str(order["_id"]),
            "order_number": order["order_number"],
            "customer_email": order["customer_email"],
        },
        receipt_email=order["customer_email"],
        automatic_payment_methods={"enabled": True},
    )


def retrieve_intent(intent_id: str) -> Any:
    return _stripe_client().PaymentIntent.retrieve(intent_id)


def _attach_intent(db: Database, order: dict, intent: Any) -> None:
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_intent_id": intent["id"], "updated_at": utcnow()}},
    )
    order["payment_intent_id"] = intent["id"]


def _checkout_response(order: dict, intent: Any, total: float) -> Dict[str, Any]:
    return {
        "client_secret": intent["client_secret"],
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "amount": total,
    }


def create_checkout(
    db: Database,
    items: List[Dict[str, Any]],
    delivery_method: str,
    delivery_address: Optional[Dict[str, Any]],
    customer_email: str,
    customer_name: str,
    customer_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Produce one confirmable PaymentIntent and its pending order.

    Repeated submissions of the same cart by the same customer within
    PENDING_REUSE_WINDOW share one order, and its intent while the intent is
    still confirmable.
    """
    customer_email = customer_email.strip().lower()
    line_items, subtotal = build_line_items(db, items)
    fee = delivery_fee_for(delivery_method)
    total = round(subtotal + fee, 2)
    signature = cart_signature(items)

    existing = find_recent_pending_order(db, customer_email, total, signature, PENDING_REUSE_WINDOW)
    if existing and existing.get("payment_intent_id"):
        intent = retrieve_intent(existing["payment_intent_id"])
        if intent["status"] in TERMINAL_INTENT_STATUSES:
            intent = create_intent(existing, total)
            _attach_intent(db, existing, intent)
            logger.info("payment_intent_replaced", order_number=existing["order_number"], payment_intent=intent["id"])
        else:
            logger.info("payment_intent_reused", order_number=existing["order_number"], payment_intent=intent["id"])
        return _checkout_response(existing, intent, total)

    order_number, order_date, sequence = next_order_number(db)
    order = Order(
        order_number=order_number,
        order_date=order_date,
        order_sequence=sequence,
        customer_id=customer_id,
        customer_email=customer_email,
        customer_name=customer_name,
        items=line_items,
        subtotal=subtotal,
        delivery_fee=fee,
        total=total,
        delivery_option=delivery_method,
        delivery_address=delivery_address,
        cart_signature=signature,
    ).model_dump(mode="json")
    order["created_at"] = order["updated_at"] = utcnow()
    try:
        order["_id"] = db["order"].insert_one(order).inserted_id
        logger.info("order_created", order_number=order_number, total=total)
    except DuplicateKeyError as exc:
        if not _is_order_number_conflict(exc):
            raise
        recent = find_recent_pending_order(db, customer_email, total, signature, RACE_LOOKUP_WINDOW)
        if recent is None:
            raise
        logger.info("order_number_conflict_resolved", order_number=recent["order_number"])
        order = recent
        if recent.get("payment_intent_id"):
            intent = retrieve_intent(recent["payment_intent_id"])
            if intent["status"] not in TERMINAL_INTENT_STATUSES:
                return _checkout_response(order, intent, total)

    intent = create_intent(order, total)
    _attach_intent(db, order, intent)
    logger.info("payment_intent_created", order_number=order["order_number"], payment_intent=intent["id"])
    return _checkout_response(order, intent, total)


def confirm_order_payment(db: Database, order: dict, payment_intent_id: Optional[str], redirect_status: Optional[str]) -> dict:
    """Mark an order paid after the gateway redirects back to the shop."""
    if redirect_status != "succeeded":
        raise HTTPException(status_code=400, detail="Your payment was not successful. Please try again.")
    if order.get("payment_status") == PaymentStatus.paid.value:
        return order
    if not payment_intent_id or payment_intent_id != order.get("payment_intent_id"):
        raise HTTPException(status_code=400, detail="Payment does not match this order")

    intent = retrieve_intent(payment_intent_id)
    if intent["status"] != "succeeded":
        raise HTTPException(status_code=400, detail=f"Payment is {intent['status']}")

    updates = {
        "status": OrderStatus.confirmed.value,
        "payment_status": PaymentStatus.paid.value,
        "updated_at": utcnow(),
    }
    db["order"].update_one({"_id": order["_id"]}, {"$set": updates})
    order.update(updates)
    logger.info("order_paid", order_number=order["order_number"], payment_intent=payment_intent_id)
    return order
