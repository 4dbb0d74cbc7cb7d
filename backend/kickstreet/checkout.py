"""
Checkout and order pipeline.

Two branches turn a cart into an order:

* cash on delivery, synchronous: validate every line, decrement stock with a
  conditional update per product, insert the order;
* card, asynchronous: create a Stripe Checkout session now, create the order
  when the signed ``checkout.session.completed`` webhook arrives. The webhook
  is idempotent on the Stripe session id and the client polls
  ``verify-session`` until the order exists.
"""
import json
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

import stripe
from bson import ObjectId
from flask import current_app
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import emails
from .cart import load_cart_products
from .errors import (
    InsufficientStock,
    NotFound,
    UpstreamFailure,
    ValidationError,
)
from .utils import (
    is_valid_email,
    isoformat,
    normalize_address_payload,
    normalize_email,
    parse_object_id,
    safe_float,
    safe_int,
    utcnow,
)

PAYMENT_METHODS = ("stripe", "cod")
PAYMENT_STATUSES = ("Pending", "Paid", "Failed")
ORDER_STATUSES = ("Processing", "Shipped", "Delivered", "Cancelled", "Returned")

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"

# Stripe amounts are integers in the currency's smallest unit; these have no minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)


def dig(source, *path, default=None):
    current = source
    for key in path:
        if current is None:
            return default
        try:
            current = current[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return default
    return default if current is None else current


def minor_unit_factor(currency: Optional[str]) -> int:
    return 1 if str(currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 100


def to_minor_units(amount: float, currency: Optional[str]) -> int:
    return int(round(amount * minor_unit_factor(currency)))


def from_minor_units(amount: float, currency: Optional[str]) -> float:
    return round(amount / minor_unit_factor(currency), 2)


# --- Stock ---


def reserve_stock(db, product_id: ObjectId, quantity: int) -> bool:
    """Decrement stock only if it stays non-negative."""
    updated = db.products.find_one_and_update(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
    )
    return updated is not None


def release_stock(db, product_id: ObjectId, quantity: int) -> None:
    db.products.update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": utcnow()}},
    )


def required_quantities(lines) -> "OrderedDict[ObjectId, int]":
    totals: "OrderedDict[ObjectId, int]" = OrderedDict()
    for line in lines:
        product_id = line.get("product_id")
        if product_id is None:
            continue
        totals[product_id] = totals.get(product_id, 0) + int(line.get("quantity") or 0)
    return totals


def check_availability(lines, products: Dict[ObjectId, Dict]) -> None:
    for product_id, quantity in required_quantities(lines).items():
        product = products[product_id]
        if (safe_int(product.get("stock"), 0) or 0) < quantity:
            raise InsufficientStock(f"Insufficient stock for {product.get('name', 'item')}")


def reserve_lines(db, lines, products: Dict[ObjectId, Dict]) -> List[Tuple[ObjectId, int]]:
    reserved: List[Tuple[ObjectId, int]] = []
    for product_id, quantity in required_quantities(lines).items():
        if not reserve_stock(db, product_id, quantity):
            for reserved_id, reserved_quantity in reserved:
                release_stock(db, reserved_id, reserved_quantity)
            name = products.get(product_id, {}).get("name", "item")
            raise InsufficientStock(f"Insufficient stock for {name}")
        reserved.append((product_id, quantity))
    return reserved


# --- Orders ---


def build_order_items(lines, products: Dict[ObjectId, Dict]) -> Tuple[List[Dict], float]:
    items: List[Dict] = []
    total = 0.0
    for line in lines:
        product = products[line["product_id"]]
        price = round(safe_float(product.get("price"), 0.0), 2)
        images = product.get("images") or []
        items.append(
            {
                "product_id": product["_id"],
                "name": product.get("name", ""),
                "quantity": line["quantity"],
                "price": price,
                "size": line["size"],
                "image": line.get("image") or (images[0] if images else ""),
            }
        )
        total += price * line["quantity"]
    return items, round(total, 2)


def checkout_email(email: Optional[str]) -> str:
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email is required for checkout")
    if not is_valid_email(normalized):
        raise ValidationError("Please provide a valid email address.")
    return normalized


def notify_order_placed(order_document: Dict) -> None:
    sent, error_details = emails.send_order_confirmation_email(order_document)
    if not sent:
        current_app.logger.warning(
            "Order confirmation email for %s not sent: %s",
            order_document.get("_id"),
            error_details,
        )


def place_cod_order(
    db,
    lines,
    email: Optional[str],
    shipping_address: Optional[Dict] = None,
    user_id: Optional[ObjectId] = None,
    currency: str = "INR",
) -> Dict:
    email = checkout_email(email)
    products = load_cart_products(db, lines)
    check_availability(lines, products)
    items, total = build_order_items(lines, products)

    # Compensating release keeps a failed checkout from leaving stock decremented.
    reserved = reserve_lines(db, lines, products)

    now = utcnow()
    order_document = {
        "user_id": user_id,
        "email": email,
        "items": items,
        "amount_total": total,
        "currency": currency.upper(),
        "payment_method": "cod",
        "status": "Pending",
        "order_status": "Processing",
        "shipping_address": normalize_address_payload(shipping_address),
        "tracking_id": "",
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = db.orders.insert_one(order_document)
    except PyMongoError:
        for product_id, quantity in reserved:
            release_stock(db, product_id, quantity)
        raise
    order_document["_id"] = result.inserted_id

    current_app.logger.info("COD order %s placed for %s", result.inserted_id, email)
    notify_order_placed(order_document)
    return order_document


# --- Card payments ---


def create_provider_session(**params):
    return stripe.checkout.Session.create(**params)


def fetch_session_line_items(session_id: str) -> List:
    response = stripe.checkout.Session.list_line_items(
        session_id, limit=100, expand=["data.price.product"]
    )
    return list(response.auto_paging_iter())


def create_checkout_session(
    db,
    lines,
    email: Optional[str],
    *,
    success_url: str,
    cancel_url: str,
    currency: str = "INR",
    user_id: Optional[ObjectId] = None,
    allowed_countries=("IN",),
) -> Dict[str, str]:
    email = checkout_email(email)
    products = load_cart_products(db, lines)
    check_availability(lines, products)
    items, _ = build_order_items(lines, products)

    line_items = []
    for item in items:
        line_items.append(
            {
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(item["price"], currency),
                    "product_data": {
                        "name": f"{item['name']} (Size: UK {item['size']})",
                        "images": [item["image"]] if item["image"] else [],
                        "metadata": {
                            "productId": str(item["product_id"]),
                            "size": item["size"],
                        },
                    },
                },
                "quantity": item["quantity"],
            }
        )

    try:
        session = create_provider_session(
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            customer_email=email,
            shipping_address_collection={"allowed_countries": list(allowed_countries)},
            phone_number_collection={"enabled": True},
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"email": email, "user_id": str(user_id) if user_id else ""},
        )
    except stripe.StripeError as exc:
        current_app.logger.error("Stripe checkout session creation failed: %s", exc)
        raise UpstreamFailure("We could not start the payment. Please try again.")

    return {"url": dig(session, "url", default=""), "session_id": dig(session, "id", default="")}


def verify_webhook_event(payload: bytes, signature: Optional[str], secret: Optional[str]) -> Dict:
    if not secret:
        current_app.logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise UpstreamFailure("Webhook endpoint is not configured.")
    if not signature:
        raise ValidationError("Missing webhook signature.")

    try:
        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            text, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        event = json.loads(text)
    except stripe.SignatureVerificationError:
        raise ValidationError("Invalid webhook signature.")
    except ValueError:
        raise ValidationError("Invalid webhook payload.")

    if not isinstance(event, dict):
        raise ValidationError("Invalid webhook payload.")
    return event


def order_items_from_line_items(line_items, currency: str = "INR") -> List[Dict]:
    items: List[Dict] = []
    for line_item in line_items:
        quantity = safe_int(dig(line_item, "quantity"), 1) or 1
        product_data = dig(line_item, "price", "product", default={})
        metadata = dig(product_data, "metadata", default={})
        amount_total = safe_float(dig(line_item, "amount_total"), 0.0)
        items.append(
            {
                "product_id": parse_object_id(dig(metadata, "productId")),
                "name": dig(line_item, "description", default=""),
                "quantity": quantity,
                "price": round(from_minor_units(amount_total, currency) / quantity, 2),
                "size": dig(metadata, "size", default="N/A"),
                "image": dig(product_data, "images", 0, default=""),
            }
        )
    return items


def session_shipping_address(session) -> Dict[str, str]:
    address = dig(session, "shipping_details", "address") or dig(
        session, "collected_information", "shipping_details", "address", default={}
    )
    return normalize_address_payload(
        {
            "line1": dig(address, "line1"),
            "city": dig(address, "city"),
            "state": dig(address, "state"),
            "postal_code": dig(address, "postal_code"),
            "country": dig(address, "country"),
            "phone": dig(session, "customer_details", "phone"),
        }
    )


def commit_paid_stock(db, items) -> List[Dict]:
    shortfall: List[Dict] = []
    for product_id, quantity in required_quantities(items).items():
        if not reserve_stock(db, product_id, quantity):
            shortfall.append({"product_id": product_id, "quantity": quantity})
    return shortfall


def record_paid_session(db, session, currency: str = "INR") -> Tuple[Dict, bool]:
    """Create the order for a completed session. Returns ``(order, created)``."""
    session_id = dig(session, "id")
    if not session_id:
        raise ValidationError("Webhook event has no checkout session id.")

    existing = db.orders.find_one({"stripe_session_id": session_id})
    if existing:
        current_app.logger.info("Webhook replay for session %s ignored", session_id)
        return existing, False

    try:
        line_items = fetch_session_line_items(session_id)
    except stripe.StripeError as exc:
        current_app.logger.error("Unable to fetch line items for %s: %s", session_id, exc)
        raise UpstreamFailure("Could not load checkout line items.")

    paid = dig(session, "payment_status") in ("paid", "no_payment_required")
    order_currency = str(dig(session, "currency", default=currency)).upper()
    now = utcnow()
    order_document = {
        "user_id": parse_object_id(dig(session, "metadata", "user_id")),
        "email": normalize_email(
            dig(session, "customer_details", "email")
            or dig(session, "customer_email")
            or dig(session, "metadata", "email")
        ),
        "items": order_items_from_line_items(line_items, order_currency),
        "amount_total": from_minor_units(
            safe_float(dig(session, "amount_total"), 0.0), order_currency
        ),
        "currency": order_currency,
        "payment_method": "stripe",
        "status": "Paid" if paid else "Pending",
        "order_status": "Processing",
        "stripe_session_id": session_id,
        "shipping_address": session_shipping_address(session),
        "tracking_id": "",
        "created_at": now,
        "updated_at": now,
    }

    try:
        result = db.orders.update_one(
            {"stripe_session_id": session_id},
            {"$setOnInsert": order_document},
            upsert=True,
        )
    except DuplicateKeyError:
        # Two upserts raced; the unique session index let only one insert through.
        result = None
    if result is None or result.upserted_id is None:
        current_app.logger.info(
            "Order for session %s was stored by a concurrent webhook delivery", session_id
        )
        return db.orders.find_one({"stripe_session_id": session_id}), False
    order_document["_id"] = result.upserted_id

    shortfall = commit_paid_stock(db, order_document["items"])
    if shortfall:
        current_app.logger.warning(
            "Paid order %s could not be fully fulfilled from stock: %s",
            order_document["_id"],
            shortfall,
        )
        order_document["stock_shortfall"] = shortfall
        db.orders.update_one(
            {"_id": order_document["_id"]}, {"$set": {"stock_shortfall": shortfall}}
        )

    current_app.logger.info(
        "Order %s created from Stripe session %s", order_document["_id"], session_id
    )
    notify_order_placed(order_document)
    return order_document, True


def settle_async_payment(db, session, succeeded: bool, currency: str = "INR") -> Optional[Dict]:
    session_id = dig(session, "id")
    if not session_id:
        raise ValidationError("Webhook event has no checkout session id.")

    new_status = "Paid" if succeeded else "Failed"
    match = {"stripe_session_id": session_id, "payment_method": "stripe"}
    previous = db.orders.find_one_and_update(
        dict(match, status={"$ne": new_status}),
        {"$set": {"status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if previous is None:
        existing = db.orders.find_one(match)
        if existing is None and succeeded:
            order, _ = record_paid_session(db, session, currency)
            return order
        return existing

    if not succeeded:
        short = {entry["product_id"] for entry in previous.get("stock_shortfall") or []}
        for product_id, quantity in required_quantities(previous.get("items") or []).items():
            if product_id not in short:
                release_stock(db, product_id, quantity)
    return db.orders.find_one({"_id": previous["_id"]})


def handle_provider_event(db, event: Dict, currency: str = "INR") -> Optional[Dict]:
    event_type = dig(event, "type")
    session = dig(event, "data", "object", default={})

    if event_type == CHECKOUT_COMPLETED:
        order, _ = record_paid_session(db, session, currency)
        return order
    if event_type in (ASYNC_PAYMENT_SUCCEEDED, ASYNC_PAYMENT_FAILED):
        return settle_async_payment(db, session, event_type == ASYNC_PAYMENT_SUCCEEDED, currency)

    current_app.logger.info("Ignoring Stripe event %s", event_type)
    return None


# --- Lookups and admin updates ---


def find_order_by_session(db, session_id: Optional[str]) -> Dict:
    session_id = str(session_id or "").strip()
    if not session_id:
        raise ValidationError("Session id is required.")
    order = db.orders.find_one({"stripe_session_id": session_id})
    if not order:
        raise NotFound("Order not found.")
    return order


def list_orders(db, query: Optional[Dict] = None) -> List[Dict]:
    return list(db.orders.find(query or {}).sort("created_at", DESCENDING))


def list_orders_for_user(db, user_document) -> List[Dict]:
    return list_orders(
        db,
        {"$or": [{"user_id": user_document["_id"]}, {"email": user_document.get("email")}]},
    )


def update_order(db, order_id, payload: Dict) -> Dict:
    object_id = parse_object_id(order_id)
    if not object_id:
        raise ValidationError("Order id is required.")

    update_fields: Dict[str, object] = {}
    order_status = payload.get("order_status", payload.get("orderStatus"))
    if order_status:
        if order_status not in ORDER_STATUSES:
            raise ValidationError(
                f"Order status must be one of: {', '.join(ORDER_STATUSES)}."
            )
        update_fields["order_status"] = order_status

    status = payload.get("status")
    if status:
        if status not in PAYMENT_STATUSES:
            raise ValidationError(
                f"Payment status must be one of: {', '.join(PAYMENT_STATUSES)}."
            )
        update_fields["status"] = status

    tracking_id = payload.get("tracking_id", payload.get("trackingId"))
    if tracking_id is not None:
        update_fields["tracking_id"] = str(tracking_id).strip()

    if not update_fields:
        raise ValidationError("Nothing to update.")

    update_fields["updated_at"] = utcnow()
    order = db.orders.find_one_and_update(
        {"_id": object_id},
        {"$set": update_fields},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFound("Order not found.")
    return order


def serialize_order_item(item: Dict) -> Dict[str, object]:
    product_id = item.get("product_id")
    return {
        "product_id": str(product_id) if product_id else None,
        "name": item.get("name", ""),
        "quantity": item.get("quantity", 0),
        "price": item.get("price", 0),
        "size": item.get("size", ""),
        "image": item.get("image", ""),
    }


def serialize_order(order_document) -> Dict[str, object]:
    if not order_document:
        return {}
    user_id = order_document.get("user_id")
    serialized = {
        "id": str(order_document.get("_id")),
        "user_id": str(user_id) if user_id else None,
        "email": order_document.get("email", ""),
        "items": [serialize_order_item(item) for item in order_document.get("items") or []],
        "amount_total": order_document.get("amount_total", 0),
        "currency": order_document.get("currency", ""),
        "payment_method": order_document.get("payment_method", ""),
        "status": order_document.get("status", ""),
        "order_status": order_document.get("order_status", ""),
        "stripe_session_id": order_document.get("stripe_session_id"),
        "shipping_address": normalize_address_payload(order_document.get("shipping_address")),
        "tracking_id": order_document.get("tracking_id", ""),
        "created_at": isoformat(order_document.get("created_at")),
        "updated_at": isoformat(order_document.get("updated_at")),
    }
    if order_document.get("stock_shortfall"):
        serialized["stock_shortfall"] = [
            {"product_id": str(entry["product_id"]), "quantity": entry["quantity"]}
            for entry in order_document["stock_shortfall"]
        ]
    return serialized
