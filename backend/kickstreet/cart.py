"""
Cart lines arrive from the browser; only product id, size, and quantity are
trusted. Prices are always re-read from the catalog.
"""
from typing import Dict, List

from bson import ObjectId

from .errors import ProductNotFound, ValidationError
from .utils import parse_object_id, safe_float, safe_int


def normalize_cart_line(payload) -> Dict[str, object]:
    if not isinstance(payload, dict):
        raise ValidationError("Each cart item must be an object.")

    raw_identifier = (
        payload.get("product_id")
        or payload.get("productId")
        or payload.get("_id")
        or payload.get("id")
    )
    product_id = parse_object_id(raw_identifier)
    if not product_id:
        raise ValidationError("Cart item has an invalid product identifier.")

    quantity = safe_int(payload.get("quantity", 1), None)
    if quantity is None or quantity < 1:
        raise ValidationError("Quantity must be a positive whole number.")

    size = str(payload.get("size") or "").strip()
    if not size:
        raise ValidationError("Please pick a size for every item.")

    return {
        "product_id": product_id,
        "quantity": quantity,
        "size": size,
        "name": str(payload.get("name") or "").strip(),
        "image": str(payload.get("image") or "").strip(),
    }


def normalize_cart(raw_items) -> List[Dict[str, object]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("No items in cart")

    lines: List[Dict[str, object]] = []
    for entry in raw_items:
        line = normalize_cart_line(entry)
        for existing in lines:
            if existing["product_id"] == line["product_id"] and existing["size"] == line["size"]:
                existing["quantity"] += line["quantity"]
                break
        else:
            lines.append(line)
    return lines


def load_cart_products(db, lines) -> Dict[ObjectId, Dict]:
    product_ids = list({line["product_id"] for line in lines})
    products = {
        document["_id"]: document
        for document in db.products.find({"_id": {"$in": product_ids}})
    }
    for line in lines:
        if line["product_id"] not in products:
            label = line.get("name") or str(line["product_id"])
            raise ProductNotFound(f"Product {label} not found")
    return products


def calculate_cart_totals(items: List[Dict]) -> Dict[str, float]:
    subtotal = 0.0
    total_items = 0
    for item in items:
        quantity = safe_int(item.get("quantity"), 0) or 0
        subtotal += safe_float(item.get("price"), 0.0) * quantity
        total_items += quantity
    return {"subtotal": round(subtotal, 2), "total_items": total_items}


def quote_cart(db, lines) -> Dict[str, object]:
    products = load_cart_products(db, lines)
    quoted: List[Dict[str, object]] = []
    for line in lines:
        product = products[line["product_id"]]
        price = round(safe_float(product.get("price"), 0.0), 2)
        stock = safe_int(product.get("stock"), 0) or 0
        quoted.append(
            {
                "product_id": str(product["_id"]),
                "name": product.get("name", ""),
                "size": line["size"],
                "quantity": line["quantity"],
                "price": price,
                "line_total": round(price * line["quantity"], 2),
                "available": stock >= line["quantity"],
                "stock": stock,
            }
        )
    return {"items": quoted, **calculate_cart_totals(quoted)}
