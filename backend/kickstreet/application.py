import math
import os
from datetime import timedelta
from typing import Dict, List, Optional

import stripe
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    verify_jwt_in_request,
)
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from werkzeug.exceptions import HTTPException

from . import accounts, cart, catalog, checkout, newsletter, reporting, storage
from .errors import InternalError, ShopError, Unauthorized, ValidationError
from .utils import isoformat, normalize_email, parse_object_id, safe_int

INDEXES = (
    ("users", [("email", ASCENDING)], {"unique": True}),
    ("users", [("phone", ASCENDING)], {"unique": True}),
    ("products", [("name", ASCENDING)], {"unique": True}),
    ("products", [("slug", ASCENDING)], {"unique": True}),
    ("newsletter", [("email", ASCENDING)], {"unique": True}),
    ("sliders", [("slot", ASCENDING)], {"unique": True}),
    ("orders", [("created_at", DESCENDING)], {}),
    (
        "orders",
        [("stripe_session_id", ASCENDING)],
        {"unique": True, "partialFilterExpression": {"stripe_session_id": {"$type": "string"}}},
    ),
)


def split_csv(value) -> List[str]:
    if isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = str(value or "").split(",")
    return [str(item).strip() for item in items if str(item).strip()]


def ensure_indexes(app: Flask, db) -> None:
    for collection_name, keys, options in INDEXES:
        try:
            db[collection_name].create_index(keys, **options)
        except Exception as exc:
            app.logger.warning(
                "Unable to ensure index %s on %s: %s", keys, collection_name, exc
            )


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application."""
    load_dotenv()
    app = Flask(__name__)

    # --- Configuration ---
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config.from_mapping(
        JWT_SECRET_KEY=os.getenv("JWT_SECRET_KEY", "change-me-in-production"),
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=7),
        MONGO_URI=os.getenv("MONGO_URI", "mongodb://localhost:27017/kickstreet"),
        BCRYPT_ROUNDS=int(os.getenv("BCRYPT_ROUNDS", "12")),
        STRIPE_SECRET_KEY=(os.getenv("STRIPE_SECRET_KEY") or "").strip(),
        STRIPE_WEBHOOK_SECRET=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
        RESEND_API_KEY=(os.getenv("RESEND_API_KEY") or "").strip(),
        MAIL_SENDER=os.getenv("MAIL_SENDER") or "KickStreet <support@kickstreet.store>",
        STORE_CURRENCY=(os.getenv("STORE_CURRENCY") or "INR").upper(),
        FRONTEND_URL=(os.getenv("FRONTEND_URL") or "http://localhost:3000").strip(),
        CORS_ALLOWED_ORIGINS=os.getenv("CORS_ALLOWED_ORIGINS", ""),
        ADMIN_EMAILS=os.getenv("ADMIN_EMAILS", ""),
        PUBLIC_BASE_URL=(os.getenv("PUBLIC_BASE_URL") or "").strip(),
        UPLOAD_FOLDER=os.getenv("UPLOAD_FOLDER")
        or os.path.join(os.path.dirname(app.root_path), "uploads"),
        MAX_CONTENT_LENGTH=max_upload_mb * 1024 * 1024,
        LOG_LEVEL=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
    if test_config:
        app.config.update(test_config)

    app.config["ADMIN_EMAILS"] = [
        normalize_email(email) for email in split_csv(app.config["ADMIN_EMAILS"])
    ]
    app.logger.setLevel(app.config["LOG_LEVEL"])
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        app.config["FRONTEND_URL"],
        *split_csv(app.config["CORS_ALLOWED_ORIGINS"]),
    ]
    CORS(app, supports_credentials=True, origins=[origin for origin in allowed_origins if origin])

    JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database
    ensure_indexes(app, db)

    if app.config["STRIPE_SECRET_KEY"]:
        stripe.api_key = app.config["STRIPE_SECRET_KEY"]

    # --- Errors ---

    @app.errorhandler(ShopError)
    def handle_shop_error(error: ShopError):
        if error.status_code >= 500:
            app.logger.error("%s on %s %s: %s", error.code, request.method, request.path, error)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        if isinstance(error, HTTPException):
            return error
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify(InternalError().to_dict()), 500

    # --- Helpers ---

    def request_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def current_user(optional: bool = False):
        verify_jwt_in_request(optional=optional)
        user_id = parse_object_id(get_jwt_identity())
        user = db.users.find_one({"_id": user_id}) if user_id else None
        if not user and not optional:
            raise Unauthorized()
        return user

    def current_role() -> Optional[str]:
        verify_jwt_in_request(optional=True)
        return get_jwt().get("role")

    def checkout_request():
        payload = request_payload()
        lines = cart.normalize_cart(payload.get("items"))
        user = current_user(optional=True)
        email = (user or {}).get("email") or payload.get("email")
        return payload, lines, user, email

    def frontend_origin() -> str:
        return (request.headers.get("Origin") or app.config["FRONTEND_URL"]).rstrip("/")

    @app.before_request
    def enforce_route_policy():
        if request.method == "OPTIONS":
            return None
        required_role = accounts.required_role_for(request.path)
        if required_role is None:
            return None
        accounts.authorize(current_role(), required_role)
        return None

    # --- ROUTES ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["UPLOAD_FOLDER"], filename)

    # Auth

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        user, expires_at = accounts.register_user(
            db,
            request_payload(),
            rounds=app.config["BCRYPT_ROUNDS"],
            admin_emails=app.config["ADMIN_EMAILS"],
        )
        app.logger.info("Registered unverified account %s", user["_id"])
        return (
            jsonify(
                {
                    "message": "OTP sent! Check your inbox.",
                    "email": user["email"],
                    "expires_at": isoformat(expires_at),
                }
            ),
            201,
        )

    @app.route("/api/auth/resend-otp", methods=["POST"])
    def resend_otp():
        payload = request_payload()
        expires_at = accounts.resend_verification_code(db, payload.get("email"))
        return jsonify({"message": "A new code is on its way.", "expires_at": isoformat(expires_at)})

    @app.route("/api/auth/verify-otp", methods=["POST"])
    def verify_otp():
        payload = request_payload()
        user = accounts.verify_account(db, payload.get("email"), payload.get("otp"))
        return jsonify(
            {
                "message": "Account verified. You can now log in.",
                "user": accounts.serialize_user_profile(user),
            }
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request_payload()
        user = accounts.authenticate(db, payload.get("email"), payload.get("password"))
        token = create_access_token(
            identity=str(user["_id"]), additional_claims=accounts.session_claims(user)
        )
        return jsonify({"access_token": token, "user": accounts.serialize_user_profile(user)})

    @app.route("/api/auth/forgot-password", methods=["POST"])
    def forgot_password():
        email = normalize_email(request_payload().get("email"))
        if not email:
            raise ValidationError("Email is required.")
        accounts.request_password_reset(db, email)
        return jsonify({"message": "If the email exists, a reset code will be sent."})

    @app.route("/api/auth/reset-password", methods=["POST"])
    def reset_password():
        payload = request_payload()
        accounts.reset_password(
            db,
            payload.get("email"),
            payload.get("otp"),
            payload.get("new_password", payload.get("newPassword")),
            rounds=app.config["BCRYPT_ROUNDS"],
        )
        return jsonify({"message": "Password successfully reset"})

    @app.route("/api/auth/check-role", methods=["GET"])
    def check_role():
        return jsonify({"role": current_role()})

    @app.route("/api/auth/check-access", methods=["GET"])
    def check_access():
        path = request.args.get("path", "/")
        role = current_role()
        return jsonify(
            {
                "path": path,
                "role": role,
                "required_role": accounts.required_role_for(path),
                "allowed": accounts.is_route_allowed(role, path),
            }
        )

    @app.route("/api/auth/profile", methods=["GET", "PUT"])
    def profile():
        user = current_user()
        if request.method == "PUT":
            user = accounts.update_profile(db, user, request_payload())
        return jsonify({"user": accounts.serialize_user_profile(user)})

    # Storefront

    @app.route("/api/products", methods=["GET"])
    def list_products():
        page = safe_int(request.args.get("page"), 1) or 1
        limit = safe_int(request.args.get("limit"), 24) or 24
        products, total = catalog.list_products(
            db,
            category=request.args.get("category") or None,
            search=request.args.get("search") or None,
            sort=request.args.get("sort") or None,
            page=page,
            limit=limit,
        )
        limit = min(max(limit, 1), 100)
        return jsonify(
            {
                "products": [catalog.serialize_product(product) for product in products],
                "pagination": {
                    "page": max(page, 1),
                    "limit": limit,
                    "total": total,
                    "pages": math.ceil(total / limit) if total else 0,
                },
            }
        )

    @app.route("/api/products/<identifier>", methods=["GET"])
    def get_product(identifier: str):
        product = catalog.get_product(db, identifier)
        return jsonify({"product": catalog.serialize_product(product)})

    @app.route("/api/sliders", methods=["GET"])
    def list_sliders():
        sliders = catalog.list_sliders(db, active_only=True)
        return jsonify({"sliders": [catalog.serialize_slider(slider) for slider in sliders]})

    # Admin catalog

    @app.route("/api/admin/products", methods=["GET"])
    def admin_list_products():
        products = db.products.find({}).sort("created_at", DESCENDING)
        return jsonify({"products": [catalog.serialize_product(product) for product in products]})

    @app.route("/api/admin/products", methods=["POST"])
    def admin_create_product():
        product = catalog.create_product(db, request_payload())
        app.logger.info("Product %s created", product["_id"])
        catalog.announce_new_product(db, product)
        return jsonify({"product": catalog.serialize_product(product)}), 201

    @app.route("/api/admin/products/<product_id>", methods=["GET"])
    def admin_get_product(product_id: str):
        product = catalog.get_product_by_id(db, product_id)
        return jsonify({"product": catalog.serialize_product(product)})

    @app.route("/api/admin/products/<product_id>", methods=["PUT"])
    def admin_update_product(product_id: str):
        product = catalog.update_product(db, product_id, request_payload())
        return jsonify({"product": catalog.serialize_product(product)})

    @app.route("/api/admin/products/<product_id>", methods=["DELETE"])
    def admin_delete_product(product_id: str):
        product = catalog.delete_product(db, product_id)
        app.logger.info("Product %s deleted", product["_id"])
        return jsonify({"message": "Product deleted successfully."})

    @app.route("/api/admin/upload", methods=["POST"])
    def admin_upload_image():
        if request.is_json:
            payload = request_payload()
            image = payload.get("image")
            if not image:
                raise ValidationError("Image is required")
            url = storage.save_data_url_image(image, payload.get("folder") or "products")
        else:
            url = storage.save_uploaded_image(
                request.files.get("image"), request.form.get("folder") or "products"
            )
        return jsonify({"url": url})

    @app.route("/api/admin/sliders", methods=["GET"])
    def admin_list_sliders():
        sliders = catalog.list_sliders(db)
        return jsonify({"sliders": [catalog.serialize_slider(slider) for slider in sliders]})

    @app.route("/api/admin/sliders", methods=["POST"])
    def admin_create_slider():
        slider = catalog.create_slider(db, request_payload())
        return jsonify({"slider": catalog.serialize_slider(slider)}), 201

    @app.route("/api/admin/sliders/quick-add", methods=["POST"])
    def admin_quick_add_sliders():
        sliders = catalog.quick_add_sliders(db)
        return jsonify({"sliders": [catalog.serialize_slider(slider) for slider in sliders]}), 201

    @app.route("/api/admin/sliders/<slider_id>", methods=["GET"])
    def admin_get_slider(slider_id: str):
        return jsonify({"slider": catalog.serialize_slider(catalog.get_slider(db, slider_id))})

    @app.route("/api/admin/sliders/<slider_id>", methods=["PUT"])
    def admin_update_slider(slider_id: str):
        slider = catalog.update_slider(db, slider_id, request_payload())
        return jsonify({"slider": catalog.serialize_slider(slider)})

    @app.route("/api/admin/sliders/<slider_id>", methods=["DELETE"])
    def admin_delete_slider(slider_id: str):
        catalog.delete_slider(db, slider_id)
        return jsonify({"message": "Slider deleted successfully."})

    # Admin orders and reporting

    @app.route("/api/admin/orders", methods=["GET"])
    def admin_list_orders():
        orders = checkout.list_orders(db)
        return jsonify({"orders": [checkout.serialize_order(order) for order in orders]})

    @app.route("/api/admin/orders/<order_id>", methods=["PUT"])
    def admin_update_order(order_id: str):
        order = checkout.update_order(db, order_id, request_payload())
        app.logger.info("Order %s updated", order["_id"])
        return jsonify({"order": checkout.serialize_order(order), "message": "Order updated successfully."})

    @app.route("/api/admin/stats", methods=["GET"])
    def admin_stats():
        stats = reporting.get_stats(db, request.args.get("filter", "all"))
        return jsonify({"stats": stats})

    # Cart and checkout

    @app.route("/api/cart/quote", methods=["POST"])
    def quote_cart():
        lines = cart.normalize_cart(request_payload().get("items"))
        return jsonify(cart.quote_cart(db, lines))

    @app.route("/api/checkout/cod", methods=["POST"])
    def checkout_cod():
        payload, lines, user, email = checkout_request()
        order = checkout.place_cod_order(
            db,
            lines,
            email,
            payload.get("shipping_address") or payload.get("shippingAddress"),
            user_id=(user or {}).get("_id"),
            currency=app.config["STORE_CURRENCY"],
        )
        return (
            jsonify(
                {
                    "message": "COD order placed successfully!",
                    "order_id": str(order["_id"]),
                    "order": checkout.serialize_order(order),
                }
            ),
            201,
        )

    @app.route("/api/checkout/session", methods=["POST"])
    def checkout_session():
        _, lines, user, email = checkout_request()
        origin = frontend_origin()
        result = checkout.create_checkout_session(
            db,
            lines,
            email,
            success_url=f"{origin}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{origin}/cart",
            currency=app.config["STORE_CURRENCY"],
            user_id=(user or {}).get("_id"),
        )
        return jsonify(result)

    @app.route("/api/webhooks/payment", methods=["POST"])
    @app.route("/api/webhooks/stripe", methods=["POST"])
    def payment_webhook():
        event = checkout.verify_webhook_event(
            request.get_data(),
            request.headers.get("Stripe-Signature"),
            app.config["STRIPE_WEBHOOK_SECRET"],
        )
        app.logger.info("Stripe event %s received", event.get("type"))
        order = checkout.handle_provider_event(db, event, app.config["STORE_CURRENCY"])
        return jsonify({"received": True, "order_id": str(order["_id"]) if order else None})

    # Orders

    @app.route("/api/orders/verify-session", methods=["GET"])
    def verify_session():
        order = checkout.find_order_by_session(db, request.args.get("session_id"))
        return jsonify({"order": checkout.serialize_order(order)})

    @app.route("/api/orders/me", methods=["GET"])
    def my_orders():
        orders = checkout.list_orders_for_user(db, current_user())
        return jsonify({"orders": [checkout.serialize_order(order) for order in orders]})

    # Newsletter

    @app.route("/api/newsletter/subscribe", methods=["POST"])
    def newsletter_subscribe():
        newsletter.subscribe(db, request_payload().get("email"))
        return (
            jsonify({"message": "Welcome to the crew! You'll be first to know about new drops."}),
            201,
        )

    return app
