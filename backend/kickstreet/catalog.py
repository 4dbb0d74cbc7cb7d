import re
import unicodedata
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from flask import current_app
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from . import emails, storage
from .errors import Conflict, LimitExceeded, NotFound, ValidationError
from .utils import (
    isoformat,
    normalize_string_list,
    parse_object_id,
    safe_float,
    safe_int,
    utcnow,
)

CATEGORIES = ("Men", "Women", "Children")
DEFAULT_BRAND = "KickStreet"
MAX_SLIDERS = 3
ANNOUNCEMENT_BATCH_SIZE = 50
PRODUCT_SORTS = {
    "newest": [("created_at", DESCENDING)],
    "price_asc": [("price", ASCENDING), ("created_at", DESCENDING)],
    "price_desc": [("price", DESCENDING), ("created_at", DESCENDING)],
}


def slugify_product_name(value: Optional[str]) -> str:
    condensed = " ".join(str(value or "").split()).lower()
    ascii_name = (
        unicodedata.normalize("NFKD", condensed).encode("ascii", "ignore").decode("ascii")
    )
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_name).strip("-")
    if not slug:
        slug = uuid4().hex
    return slug


def format_price(value) -> str:
    price = round(safe_float(value, 0.0), 2)
    if price == int(price):
        return f"₹{int(price):,}"
    return f"₹{price:,.2f}"


def normalize_product_payload(payload: Dict, partial: bool = False) -> Dict[str, object]:
    fields: Dict[str, object] = {}

    if not partial or payload.get("name"):
        name = " ".join(str(payload.get("name") or "").split())
        if not name:
            raise ValidationError("Product name is required.")
        fields["name"] = name
        fields["slug"] = slugify_product_name(name)

    if not partial or payload.get("description"):
        description = str(payload.get("description") or "").strip()
        if not description:
            raise ValidationError("Description is required.")
        fields["description"] = description

    if not partial or payload.get("price") not in (None, ""):
        price = safe_float(payload.get("price"), None)
        if price is None:
            raise ValidationError("Price must be a valid number.")
        if price < 0:
            raise ValidationError("Price cannot be negative.")
        fields["price"] = round(price, 2)

    if not partial or payload.get("category"):
        category = str(payload.get("category") or "").strip()
        if category not in CATEGORIES:
            raise ValidationError(
                f"{category or 'Category'} is not a valid category. "
                "Choose Men, Women, or Children."
            )
        fields["category"] = category

    if not partial or payload.get("brand"):
        fields["brand"] = str(payload.get("brand") or "").strip() or DEFAULT_BRAND

    for key in ("sizes", "colors"):
        if not partial or payload.get(key) is not None:
            fields[key] = normalize_string_list(payload.get(key))

    if not partial or payload.get("stock") not in (None, ""):
        stock = safe_int(payload.get("stock", 0), None)
        if stock is None:
            raise ValidationError("Stock must be a whole number.")
        if stock < 0:
            raise ValidationError("Stock cannot be negative.")
        fields["stock"] = stock

    if not partial or payload.get("images"):
        images = normalize_string_list(payload.get("images"))
        if not images:
            raise ValidationError("At least one image is required.")
        fields["images"] = images

    return fields


def serialize_product(product_document) -> Dict[str, object]:
    if not product_document:
        return {}
    stock = safe_int(product_document.get("stock"), 0) or 0
    return {
        "id": str(product_document.get("_id")),
        "name": product_document.get("name", ""),
        "slug": product_document.get("slug", ""),
        "description": product_document.get("description", ""),
        "price": round(safe_float(product_document.get("price"), 0.0), 2),
        "category": product_document.get("category", ""),
        "brand": product_document.get("brand") or DEFAULT_BRAND,
        "sizes": list(product_document.get("sizes") or []),
        "colors": list(product_document.get("colors") or []),
        "stock": stock,
        "in_stock": stock > 0,
        "images": list(product_document.get("images") or []),
        "ratings": safe_float(product_document.get("ratings"), 0.0),
        "num_of_reviews": safe_int(product_document.get("num_of_reviews"), 0) or 0,
        "created_at": isoformat(product_document.get("created_at")),
        "updated_at": isoformat(product_document.get("updated_at")),
    }


def find_product(db, identifier) -> Optional[Dict]:
    object_id = parse_object_id(identifier)
    if object_id:
        product = db.products.find_one({"_id": object_id})
        if product:
            return product
    slug = str(identifier or "").strip().lower()
    if not slug:
        return None
    return db.products.find_one({"slug": slug})


def get_product(db, identifier) -> Dict:
    product = find_product(db, identifier)
    if not product:
        raise NotFound("Product not found.")
    return product


def list_products(
    db,
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 24,
) -> Tuple[List[Dict], int]:
    query: Dict[str, object] = {}
    if category:
        if category not in CATEGORIES:
            raise ValidationError("Choose Men, Women, or Children.")
        query["category"] = category
    if search:
        pattern = re.escape(search.strip())
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]

    ordering = PRODUCT_SORTS.get(sort or "newest")
    if ordering is None:
        raise ValidationError("Sort must be newest, price_asc, or price_desc.")

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    cursor = db.products.find(query).sort(ordering).skip((page - 1) * limit).limit(limit)
    return list(cursor), db.products.count_documents(query)


def _ensure_unique_name(db, fields: Dict, exclude_id=None) -> None:
    if "name" not in fields:
        return
    query: Dict[str, object] = {
        "$or": [{"name": fields["name"]}, {"slug": fields["slug"]}]
    }
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db.products.find_one(query):
        raise Conflict("A product with this name already exists.")


def create_product(db, payload: Dict) -> Dict:
    fields = normalize_product_payload(payload)
    _ensure_unique_name(db, fields)

    now = utcnow()
    product_document = {
        **fields,
        "ratings": 0.0,
        "num_of_reviews": 0,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = db.products.insert_one(product_document)
    except DuplicateKeyError:
        raise Conflict("A product with this name already exists.")
    product_document["_id"] = result.inserted_id
    return product_document


def announce_new_product(db, product_document: Dict) -> None:
    recipients = [
        document["email"]
        for document in db.newsletter.find({"is_active": True}, {"email": 1})
        if document.get("email")
    ]
    for start in range(0, len(recipients), ANNOUNCEMENT_BATCH_SIZE):
        batch = recipients[start : start + ANNOUNCEMENT_BATCH_SIZE]
        sent, error_details = emails.send_new_product_announcement(product_document, batch)
        if not sent:
            current_app.logger.warning(
                "New product announcement to subscribers %d-%d failed: %s",
                start + 1,
                start + len(batch),
                error_details,
            )


def update_product(db, product_id, payload: Dict) -> Dict:
    product = get_product_by_id(db, product_id)
    fields = normalize_product_payload(payload, partial=True)
    if fields.get("name") == product.get("name"):
        fields.pop("name")
        fields.pop("slug")
    _ensure_unique_name(db, fields, exclude_id=product["_id"])

    if fields:
        fields["updated_at"] = utcnow()
        try:
            db.products.update_one({"_id": product["_id"]}, {"$set": fields})
        except DuplicateKeyError:
            raise Conflict("A product with this name already exists.")
    return db.products.find_one({"_id": product["_id"]})


def get_product_by_id(db, product_id) -> Dict:
    object_id = parse_object_id(product_id)
    if not object_id:
        raise ValidationError("Invalid product identifier.")
    product = db.products.find_one({"_id": object_id})
    if not product:
        raise NotFound("Product not found.")
    return product


def delete_product(db, product_id) -> Dict:
    product = get_product_by_id(db, product_id)
    for image_url in product.get("images") or []:
        storage.delete_image_url(image_url)
    db.products.delete_one({"_id": product["_id"]})
    return product


# --- Sliders ---


def normalize_slider_payload(payload: Dict, partial: bool = False) -> Dict[str, object]:
    fields: Dict[str, object] = {}

    if not partial or payload.get("image"):
        image = str(payload.get("image") or "").strip()
        if not image:
            raise ValidationError("Slider image is required.")
        fields["image"] = image

    raw_product_id = payload.get("product_id", payload.get("productId"))
    if not partial or raw_product_id is not None:
        if raw_product_id:
            product_id = parse_object_id(raw_product_id)
            if not product_id:
                raise ValidationError("Invalid product identifier.")
            fields["product_id"] = product_id
        else:
            fields["product_id"] = None

    for key in ("title", "subtitle"):
        if not partial or payload.get(key) is not None:
            fields[key] = str(payload.get(key) or "").strip()

    if payload.get("order") not in (None, ""):
        order = safe_int(payload.get("order"), None)
        if order is None:
            raise ValidationError("Order must be a whole number.")
        fields["order"] = order

    raw_active = payload.get("is_active", payload.get("isActive"))
    if raw_active is not None:
        fields["is_active"] = bool(raw_active)
    elif not partial:
        fields["is_active"] = True

    return fields


def serialize_slider(slider_document) -> Dict[str, object]:
    if not slider_document:
        return {}
    slider_id = slider_document.get("_id")
    product_id = slider_document.get("product_id")
    return {
        "id": str(slider_id) if slider_id else None,
        "image": slider_document.get("image", ""),
        "product_id": str(product_id) if product_id else None,
        "title": slider_document.get("title", ""),
        "subtitle": slider_document.get("subtitle", ""),
        "order": slider_document.get("order", 0),
        "is_active": bool(slider_document.get("is_active", True)),
        "synthesized": slider_id is None,
        "created_at": isoformat(slider_document.get("created_at")),
    }


def create_slider(db, payload: Dict) -> Dict:
    fields = normalize_slider_payload(payload)

    # Each slider holds one of MAX_SLIDERS slots under a unique index, so the
    # cap survives concurrent inserts.
    taken = {document.get("slot") for document in db.sliders.find({}, {"slot": 1})}
    for slot in range(MAX_SLIDERS):
        if slot in taken:
            continue
        now = utcnow()
        slider_document = {
            "order": len(taken),
            **fields,
            "slot": slot,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = db.sliders.insert_one(slider_document)
        except DuplicateKeyError:
            taken.add(slot)
            continue
        slider_document["_id"] = result.inserted_id
        return slider_document

    raise LimitExceeded("Maximum 3 sliders allowed. Delete one first.")


def slider_fields_from_product(product_document, position: int) -> Dict[str, object]:
    images = product_document.get("images") or []
    return {
        "image": images[0] if images else "",
        "product_id": product_document.get("_id"),
        "title": product_document.get("name", ""),
        "subtitle": format_price(product_document.get("price")),
        "order": position,
        "is_active": True,
    }


def synthesize_sliders(db) -> List[Dict]:
    latest = db.products.find({}).sort("created_at", DESCENDING).limit(MAX_SLIDERS)
    return [
        slider_fields_from_product(product, position)
        for position, product in enumerate(latest)
    ]


def list_sliders(db, active_only: bool = False) -> List[Dict]:
    """Persisted sliders by display order, or transient ones derived from the newest products."""
    query = {"is_active": True} if active_only else {}
    sliders = list(db.sliders.find(query).sort("order", ASCENDING))
    if sliders or db.sliders.count_documents({}):
        return sliders
    return synthesize_sliders(db)


def quick_add_sliders(db) -> List[Dict]:
    free_slots = MAX_SLIDERS - db.sliders.count_documents({})
    if free_slots <= 0:
        raise LimitExceeded("Maximum 3 sliders allowed. Delete one first.")

    featured_ids = [
        document["product_id"]
        for document in db.sliders.find({}, {"product_id": 1})
        if document.get("product_id")
    ]
    candidates = (
        db.products.find({"_id": {"$nin": featured_ids}})
        .sort("created_at", DESCENDING)
        .limit(free_slots)
    )
    offset = MAX_SLIDERS - free_slots
    created = []
    for position, product in enumerate(candidates):
        created.append(
            create_slider(db, slider_fields_from_product(product, offset + position))
        )
    return created


def get_slider(db, slider_id) -> Dict:
    object_id = parse_object_id(slider_id)
    if not object_id:
        raise ValidationError("Invalid slider identifier.")
    slider = db.sliders.find_one({"_id": object_id})
    if not slider:
        raise NotFound("Slider not found.")
    return slider


def update_slider(db, slider_id, payload: Dict) -> Dict:
    slider = get_slider(db, slider_id)
    fields = normalize_slider_payload(payload, partial=True)
    if fields:
        fields["updated_at"] = utcnow()
        db.sliders.update_one({"_id": slider["_id"]}, {"$set": fields})
    return db.sliders.find_one({"_id": slider["_id"]})


def delete_slider(db, slider_id) -> Dict:
    slider = get_slider(db, slider_id)
    db.sliders.delete_one({"_id": slider["_id"]})
    return slider
