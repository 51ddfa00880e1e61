import hashlib
import math
import os
import re
import secrets
from datetime import datetime, timedelta
from functools import wraps
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

import bcrypt
import click
import resend
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, render_template, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    current_user,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

load_dotenv()

_resend_password_reset_api_key = (
    os.getenv("RESEND_PASSWORD_RESET_API_KEY") or os.getenv("RESEND_API_KEY") or ""
).strip()

ALLOWED_USER_ROLES = {"admin", "standard"}
MAX_PAGE_NUMBER = 10000

SEED_USERS = [
    {"name": "Admin User", "email": "admin@example.com", "password": "123456", "role": "admin"},
    {"name": "John Doe", "email": "john@example.com", "password": "123456", "role": "standard"},
    {"name": "Jane Doe", "email": "jane@example.com", "password": "123456", "role": "standard"},
]

SEED_PRODUCTS = [
    {
        "name": "Airpods Wireless Bluetooth Headphones",
        "image": "/images/airpods.jpg",
        "description": "Bluetooth technology lets you connect it with compatible devices wirelessly.",
        "brand": "Apple",
        "category": "Electronics",
        "price": 89.99,
        "count_in_stock": 10,
    },
    {
        "name": "iPhone 11 Pro 256GB Memory",
        "image": "/images/phone.jpg",
        "description": "Introducing the iPhone 11 Pro. A transformative triple-camera system.",
        "brand": "Apple",
        "category": "Electronics",
        "price": 599.99,
        "count_in_stock": 7,
    },
    {
        "name": "Cannon EOS 80D DSLR Camera",
        "image": "/images/camera.jpg",
        "description": "Characterized by versatile imaging specs, the Canon EOS 80D clarifies itself.",
        "brand": "Cannon",
        "category": "Electronics",
        "price": 929.99,
        "count_in_stock": 5,
    },
    {
        "name": "Sony Playstation 4 Pro White Version",
        "image": "/images/playstation.jpg",
        "description": "The ultimate home entertainment center starts with PlayStation.",
        "brand": "Sony",
        "category": "Electronics",
        "price": 399.99,
        "count_in_stock": 11,
    },
    {
        "name": "Logitech G-Series Gaming Mouse",
        "image": "/images/mouse.jpg",
        "description": "Get a better handle on your games with this Logitech LIGHTSYNC gaming mouse.",
        "brand": "Logitech",
        "category": "Electronics",
        "price": 49.99,
        "count_in_stock": 7,
    },
    {
        "name": "Amazon Echo Dot 3rd Generation",
        "image": "/images/alexa.jpg",
        "description": "Meet Echo Dot - Our most popular smart speaker with a fabric design.",
        "brand": "Amazon",
        "category": "Electronics",
        "price": 29.99,
        "count_in_stock": 0,
    },
]


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``test_config`` overrides values read from the environment. ``database``
    replaces the PyMongo handle, which lets tests run against an in-memory
    store.
    """
    app = Flask(__name__)

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "JWT_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=int(os.getenv("JWT_EXPIRES_DAYS", "30"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/proshop"
    )
    app.config["BCRYPT_LOG_ROUNDS"] = int(os.getenv("BCRYPT_LOG_ROUNDS", "12"))
    app.config["PRODUCTS_PAGE_SIZE"] = int(os.getenv("PRODUCTS_PAGE_SIZE", "4"))
    app.config["TOP_PRODUCTS_LIMIT"] = 3
    app.config["REVIEW_WRITE_ATTEMPTS"] = 5
    app.config["PASSWORD_RESET_EXPIRATION_MINUTES"] = int(
        os.getenv("PASSWORD_RESET_EXPIRATION_MINUTES", "10")
    )
    app.config["PASSWORD_RESET_URL"] = os.getenv(
        "PASSWORD_RESET_URL", "http://localhost:3000/resetpassword"
    )
    app.config["RESEND_API_KEY"] = _resend_password_reset_api_key
    app.config["MAIL_SENDER"] = os.getenv(
        "MAIL_SENDER", "ProShop <no-reply@proshop.dev>"
    )
    app.config["PAYPAL_CLIENT_ID"] = os.getenv("PAYPAL_CLIENT_ID", "")
    app.config["DEFAULT_ADMIN_EMAIL"] = (
        os.getenv("DEFAULT_ADMIN_EMAIL") or ""
    ).strip().lower()
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "5"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["PRODUCT_UPLOAD_FOLDER"] = os.getenv(
        "PRODUCT_UPLOAD_FOLDER"
    ) or os.path.join(app.root_path, "uploads")
    app.config["PRODUCT_ALLOWED_EXTENSIONS"] = {"png", "jpg", "jpeg", "gif", "webp"}
    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
    db = database
    users_collection = db.users
    products_collection = db.products
    orders_collection = db.orders
    audit_logs_collection = db.audit_logs

    try:
        users_collection.create_index("email", unique=True)
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure unique index for user emails: %s", exc)

    try:
        audit_logs_collection.create_index([("created_at", DESCENDING)])
        orders_collection.create_index("user")
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes for audit logs and orders: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def normalize_role(value: Optional[str]) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ALLOWED_USER_ROLES else "standard"

    def get_user_role(user_document) -> str:
        if not user_document:
            return "standard"

        default_admin_email = app.config["DEFAULT_ADMIN_EMAIL"]
        if default_admin_email and (
            normalize_email(user_document.get("email")) == default_admin_email
        ):
            return "admin"

        return normalize_role(user_document.get("role", "standard"))

    def admin_required(view):
        @wraps(view)
        @jwt_required()
        def wrapper(*args, **kwargs):
            if get_user_role(current_user) != "admin":
                return jsonify({"message": "Not authorized as an admin."}), 403
            return view(*args, **kwargs)

        return wrapper

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(
            password.encode("utf-8"), bcrypt.gensalt(app.config["BCRYPT_LOG_ROUNDS"])
        )

    def password_matches(password: str, stored_hash) -> bool:
        if not stored_hash:
            return False
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash)

    def issue_token(user_document) -> str:
        return create_access_token(identity=str(user_document["_id"]))

    def hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def safe_float(value, default=0.0):
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return default
        if math.isfinite(numeric):
            return numeric
        return default

    def safe_positive_int(value, default=0):
        try:
            numeric = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return default
        return max(default, numeric)

    def isoformat_or_none(value):
        return f"{value.isoformat()}Z" if isinstance(value, datetime) else None

    def parse_object_id(value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value or "").strip())
        except (InvalidId, TypeError):
            return None

    def fetch_document(collection, identifier: str, label: str):
        object_id = parse_object_id(identifier)
        if object_id is None:
            return None, (
                jsonify({"message": f"Invalid {label.lower()} identifier."}),
                400,
            )

        document = collection.find_one({"_id": object_id})
        if not document:
            return None, (jsonify({"message": f"{label} not found."}), 404)

        return document, None

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(
        actor_email: Optional[str], action: str, metadata: Optional[Dict] = None
    ):
        if not action:
            return
        try:
            normalized_email = normalize_email(actor_email)
            log_document = {
                "user_email": normalized_email or None,
                "user_name": "",
                "action": action,
                "metadata": sanitize_metadata(metadata),
                "created_at": datetime.utcnow(),
            }
            if normalized_email:
                user_document = users_collection.find_one({"email": normalized_email})
                if user_document:
                    log_document["user_name"] = user_document.get("name", "") or ""
                    log_document["metadata"].setdefault(
                        "user_role", get_user_role(user_document)
                    )
            audit_logs_collection.insert_one(log_document)
        except PyMongoError as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def serialize_audit_log(document):
        if not document:
            return {}
        metadata = document.get("metadata")
        return {
            "id": str(document.get("_id")),
            "user_email": document.get("user_email") or "",
            "user_name": document.get("user_name") or "",
            "action": document.get("action") or "",
            "metadata": metadata if isinstance(metadata, dict) else {},
            "created_at": isoformat_or_none(document.get("created_at")),
        }

    def serialize_user(user_document) -> Dict[str, object]:
        if not user_document:
            return {}

        role = get_user_role(user_document)
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "role": role,
            "is_admin": role == "admin",
            "created_at": isoformat_or_none(user_document.get("created_at")),
        }

    def serialize_review(review_document) -> Dict[str, object]:
        return {
            "id": str(review_document.get("_id") or ""),
            "user": str(review_document.get("user") or ""),
            "name": review_document.get("name", "") or "",
            "rating": safe_float(review_document.get("rating"), 0.0),
            "comment": review_document.get("comment", "") or "",
            "created_at": isoformat_or_none(review_document.get("created_at")),
        }

    def serialize_product(product_document) -> Dict[str, object]:
        reviews = product_document.get("reviews")
        owner = product_document.get("user")
        return {
            "id": str(product_document.get("_id")),
            "user": str(owner) if owner else None,
            "name": product_document.get("name", "") or "",
            "brand": product_document.get("brand", "") or "",
            "category": product_document.get("category", "") or "",
            "description": product_document.get("description", "") or "",
            "image": product_document.get("image", "") or "",
            "price": round(safe_float(product_document.get("price"), 0.0), 2),
            "count_in_stock": safe_positive_int(
                product_document.get("count_in_stock"), 0
            ),
            "rating": safe_float(product_document.get("rating"), 0.0),
            "num_reviews": safe_positive_int(product_document.get("num_reviews"), 0),
            "reviews": [
                serialize_review(entry)
                for entry in (reviews if isinstance(reviews, list) else [])
                if isinstance(entry, dict)
            ],
            "created_at": isoformat_or_none(product_document.get("created_at")),
            "updated_at": isoformat_or_none(product_document.get("updated_at")),
        }

    ADDRESS_FIELDS = ("address", "city", "postal_code", "country")
    ADDRESS_FIELD_ALIASES = {
        "address": ("address", "line1", "street"),
        "postal_code": ("postal_code", "postalCode", "postcode", "zip"),
    }

    def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(payload, dict):
            return {}

        normalized: Dict[str, str] = {}
        for field in ADDRESS_FIELDS:
            aliases = ADDRESS_FIELD_ALIASES.get(field, (field,))
            value = None
            for alias in aliases:
                if alias in payload:
                    value = payload.get(alias)
                    break
            if value is None:
                continue
            trimmed = str(value).strip()
            if trimmed:
                normalized[field] = trimmed
        return normalized

    def serialize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
        normalized = normalize_address_payload(payload)
        return {field: normalized.get(field, "") for field in ADDRESS_FIELDS}

    def normalize_order_item(payload):
        if not isinstance(payload, dict):
            return None

        product_id = parse_object_id(
            payload.get("product")
            or payload.get("product_id")
            or payload.get("productId")
        )
        if product_id is None:
            return None

        return {
            "product": product_id,
            "name": str(payload.get("name") or "").strip(),
            "quantity": safe_positive_int(
                payload.get("quantity", payload.get("qty")), 1
            ),
            "image": str(payload.get("image") or "").strip(),
            "price": round(safe_float(payload.get("price"), 0.0), 2),
        }

    def serialize_order(order_document, owner=None) -> Dict[str, object]:
        serialized_items = []
        for entry in order_document.get("order_items") or []:
            if not isinstance(entry, dict):
                continue
            quantity = safe_positive_int(entry.get("quantity"), 1)
            price_value = round(safe_float(entry.get("price"), 0.0), 2)
            serialized_items.append(
                {
                    "product": str(entry.get("product") or ""),
                    "name": entry.get("name", "") or "",
                    "quantity": quantity,
                    "image": entry.get("image", "") or "",
                    "price": price_value,
                    "line_total": round(price_value * quantity, 2),
                }
            )

        payment_result = order_document.get("payment_result")
        owner_id = order_document.get("user")
        serialized = {
            "id": str(order_document.get("_id")),
            "user": str(owner_id) if owner_id else None,
            "order_items": serialized_items,
            "shipping_address": serialize_address_payload(
                order_document.get("shipping_address")
            ),
            "payment_method": order_document.get("payment_method", "") or "",
            "payment_result": payment_result
            if isinstance(payment_result, dict)
            else None,
            "items_price": safe_float(order_document.get("items_price"), 0.0),
            "shipping_price": safe_float(order_document.get("shipping_price"), 0.0),
            "tax_price": safe_float(order_document.get("tax_price"), 0.0),
            "total_price": safe_float(order_document.get("total_price"), 0.0),
            "is_paid": bool(order_document.get("is_paid")),
            "paid_at": isoformat_or_none(order_document.get("paid_at")),
            "is_sent": bool(order_document.get("is_sent")),
            "sent_at": isoformat_or_none(order_document.get("sent_at")),
            "is_delivered": bool(order_document.get("is_delivered")),
            "delivered_at": isoformat_or_none(order_document.get("delivered_at")),
            "created_at": isoformat_or_none(order_document.get("created_at")),
        }
        if owner is not None:
            serialized["user"] = owner
        return serialized

    def can_view_order(order_document, user_document) -> bool:
        if get_user_role(user_document) == "admin":
            return True
        return order_document.get("user") == user_document.get("_id")

    def allowed_image_extension(filename: str) -> bool:
        extension = os.path.splitext(filename)[1].lower().lstrip(".")
        if not extension:
            return False
        return extension in app.config["PRODUCT_ALLOWED_EXTENSIONS"]

    def save_product_image(image_file):
        if not image_file or not getattr(image_file, "filename", ""):
            return None, "An image file is required."

        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            return None, "Please choose a valid file name."

        if not allowed_image_extension(original_filename):
            return (
                None,
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
            )

        extension = os.path.splitext(original_filename)[1].lower()
        unique_filename = f"{uuid4().hex}{extension}"
        upload_folder = app.config["PRODUCT_UPLOAD_FOLDER"]

        try:
            os.makedirs(upload_folder, exist_ok=True)
            image_file.save(os.path.join(upload_folder, unique_filename))
        except OSError as exc:
            app.logger.error("Unable to store uploaded image: %s", exc)
            return None, "We could not store the uploaded image. Please try again."

        return unique_filename, None

    def remove_product_image(image_path: Optional[str]):
        if not image_path or not str(image_path).startswith("/uploads/"):
            return

        filename = secure_filename(str(image_path)[len("/uploads/"):])
        if not filename:
            return
        try:
            os.remove(os.path.join(app.config["PRODUCT_UPLOAD_FOLDER"], filename))
        except FileNotFoundError:
            return
        except OSError as exc:
            app.logger.warning("Unable to remove product image %s: %s", filename, exc)

    def send_email_via_resend(payload: Dict[str, object], api_key: str):
        configured_api_key = (api_key or "").strip()
        if not configured_api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = configured_api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def send_password_reset_email(user_document, token: str):
        expiration_minutes = app.config["PASSWORD_RESET_EXPIRATION_MINUTES"]
        reset_url = f"{app.config['PASSWORD_RESET_URL'].rstrip('/')}/{token}"
        user_name = user_document.get("name") or "there"
        text_body = (
            f"Hi {user_name},\n\n"
            "You are receiving this email because you have requested the reset of "
            f"your password. Open this link to create a new password:\n\n{reset_url}\n\n"
            f"The link expires in {expiration_minutes} minutes. If you didn't request "
            "a password reset, you can ignore this email.\n\nProShop Team"
        )
        payload: Dict[str, object] = {
            "from": app.config["MAIL_SENDER"],
            "to": [user_document["email"]],
            "subject": "Password reset token",
            "html": render_template(
                "password_reset_email.html",
                user_name=user_name,
                reset_url=reset_url,
                expiration_minutes=expiration_minutes,
            ),
            "text": text_body,
        }
        return send_email_via_resend(payload, app.config["RESEND_API_KEY"])

    def begin_password_reset(user_document) -> Tuple[str, datetime]:
        token = secrets.token_hex(20)
        expires_at = datetime.utcnow() + timedelta(
            minutes=app.config["PASSWORD_RESET_EXPIRATION_MINUTES"]
        )
        users_collection.update_one(
            {"_id": user_document["_id"]},
            {
                "$set": {
                    "reset_password_token": hash_reset_token(token),
                    "reset_password_expire": expires_at,
                }
            },
        )
        return token, expires_at

    def clear_password_reset_state(user_id):
        users_collection.update_one(
            {"_id": user_id},
            {
                "$unset": {
                    "reset_password_token": "",
                    "reset_password_expire": "",
                }
            },
        )

    def append_review(product_id: ObjectId, user_document, rating: float, comment: str):
        """Append a review and refresh the product's aggregate in one write.

        The write only lands if the product still carries the version that was
        read and holds no review by this user; a lost race re-reads and tries
        again, including the duplicate check, so concurrent reviewers never
        overwrite each other's aggregate.
        """
        user_id = user_document["_id"]
        for _ in range(app.config["REVIEW_WRITE_ATTEMPTS"]):
            product_document = products_collection.find_one({"_id": product_id})
            if not product_document:
                return None, (jsonify({"message": "Product not found."}), 404)

            existing_reviews = [
                entry
                for entry in product_document.get("reviews") or []
                if isinstance(entry, dict)
            ]
            if any(entry.get("user") == user_id for entry in existing_reviews):
                return None, (jsonify({"message": "Product already reviewed."}), 400)

            review_document = {
                "_id": ObjectId(),
                "user": user_id,
                "name": user_document.get("name", "") or "",
                "rating": rating,
                "comment": comment,
                "created_at": datetime.utcnow(),
            }
            all_reviews = existing_reviews + [review_document]
            rating_total = sum(
                safe_float(entry.get("rating"), 0.0) for entry in all_reviews
            )

            version = product_document.get("version")
            query = {
                "_id": product_id,
                "version": version if version is not None else {"$exists": False},
                "reviews.user": {"$ne": user_id},
            }
            result = products_collection.update_one(
                query,
                {
                    "$push": {"reviews": review_document},
                    "$set": {
                        "num_reviews": len(all_reviews),
                        "rating": rating_total / len(all_reviews),
                        "version": (version or 0) + 1,
                    },
                },
            )
            if result.matched_count:
                return review_document, None

        app.logger.warning(
            "Review write for product %s lost the version race %s times",
            product_id,
            app.config["REVIEW_WRITE_ATTEMPTS"],
        )
        return None, (
            jsonify({"message": "Product was updated concurrently, please retry."}),
            409,
        )

    # --- Token handling ---

    @jwt.user_lookup_loader
    def load_token_user(_jwt_header, jwt_data):
        user_id = parse_object_id(jwt_data.get("sub"))
        if user_id is None:
            return None
        return users_collection.find_one({"_id": user_id})

    @jwt.user_lookup_error_loader
    def token_user_missing(_jwt_header, _jwt_data):
        return jsonify({"message": "Not authorized, user no longer exists."}), 401

    @jwt.unauthorized_loader
    def missing_token(_reason):
        return jsonify({"message": "Not authorized, no token."}), 401

    @jwt.invalid_token_loader
    def invalid_token(_reason):
        return jsonify({"message": "Not authorized, token failed."}), 401

    @jwt.expired_token_loader
    def expired_token(_jwt_header, _jwt_data):
        return jsonify({"message": "Not authorized, token expired."}), 401

    # --- Errors ---

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        message = exc.description
        if exc.code == 404:
            message = f"Not Found - {request.path}"
        return jsonify({"message": message}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        app.logger.exception(
            "Unhandled error on %s %s", request.method, request.path
        )
        body = {"message": "Server error"}
        if app.debug:
            body["error"] = str(exc)
        return jsonify(body), 500

    # --- ROUTES ---

    # Users
    @app.route("/api/users", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        name = str(payload.get("name", "")).strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not name or not email or not password:
            return (
                jsonify({"message": "Name, email, and password are required."}),
                400,
            )
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        if users_collection.find_one({"email": email}):
            return jsonify({"message": "User already exists."}), 409

        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "role": "standard",
            "created_at": datetime.utcnow(),
        }
        try:
            users_collection.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "User already exists."}), 409

        record_audit_log(
            email, "Registered new account", {"user_id": user_document["_id"]}
        )

        return (
            jsonify({**serialize_user(user_document), "token": issue_token(user_document)}),
            201,
        )

    @app.route("/api/users/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = users_collection.find_one({"email": email})
        if not user or not password_matches(password, user.get("password")):
            return jsonify({"message": "Invalid email or password."}), 401

        users_collection.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_login_at": datetime.utcnow()}},
        )

        record_audit_log(
            email,
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )

        return jsonify({**serialize_user(user), "token": issue_token(user)})

    @app.route("/api/users/profile", methods=["GET"])
    @jwt_required()
    def get_profile():
        return jsonify(serialize_user(current_user))

    @app.route("/api/users/profile", methods=["PUT"])
    @jwt_required()
    def update_profile():
        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}

        name = str(payload.get("name") or "").strip()
        if name:
            updates["name"] = name

        email = normalize_email(payload.get("email"))
        if email and email != current_user.get("email"):
            if not is_valid_email(email):
                return jsonify({"message": "Please provide a valid email address."}), 400
            if users_collection.find_one({"email": email}):
                return jsonify({"message": "Email is already in use."}), 409
            updates["email"] = email

        password = str(payload.get("password") or "")
        if password:
            updates["password"] = hash_password(password)

        if updates:
            updates["updated_at"] = datetime.utcnow()
            try:
                users_collection.update_one(
                    {"_id": current_user["_id"]}, {"$set": updates}
                )
            except DuplicateKeyError:
                return jsonify({"message": "Email is already in use."}), 409

        updated_user = users_collection.find_one({"_id": current_user["_id"]})
        if not updated_user:
            return jsonify({"message": "User not found."}), 404

        record_audit_log(
            updated_user.get("email"),
            "Updated profile",
            {"fields": ",".join(sorted(key for key in updates if key != "updated_at"))},
        )

        return jsonify({**serialize_user(updated_user), "token": issue_token(updated_user)})

    @app.route("/api/users", methods=["GET"])
    @admin_required
    def list_users():
        users = [
            serialize_user(user)
            for user in users_collection.find().sort("name", ASCENDING)
        ]
        return jsonify(users)

    @app.route("/api/users/<user_id>", methods=["GET"])
    @admin_required
    def get_user(user_id: str):
        user_document, load_error = fetch_document(users_collection, user_id, "User")
        if load_error:
            return load_error
        return jsonify(serialize_user(user_document))

    @app.route("/api/users/<user_id>", methods=["PUT"])
    @admin_required
    def update_user(user_id: str):
        user_document, load_error = fetch_document(users_collection, user_id, "User")
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {"updated_at": datetime.utcnow()}

        name = str(payload.get("name") or "").strip()
        if name:
            updates["name"] = name

        email = normalize_email(payload.get("email"))
        if email and email != user_document.get("email"):
            if not is_valid_email(email):
                return jsonify({"message": "Please provide a valid email address."}), 400
            if users_collection.find_one({"email": email}):
                return jsonify({"message": "Email is already in use."}), 409
            updates["email"] = email

        if "is_admin" in payload or "isAdmin" in payload:
            is_admin = payload.get("is_admin", payload.get("isAdmin"))
            updates["role"] = "admin" if is_admin is True else "standard"
        elif "role" in payload:
            desired_role = str(payload.get("role") or "").strip().lower()
            if desired_role not in ALLOWED_USER_ROLES:
                return (
                    jsonify({"message": "Role must be 'admin' or 'standard'."}),
                    400,
                )
            updates["role"] = desired_role

        try:
            users_collection.update_one(
                {"_id": user_document["_id"]}, {"$set": updates}
            )
        except DuplicateKeyError:
            return jsonify({"message": "Email is already in use."}), 409

        updated_user = users_collection.find_one({"_id": user_document["_id"]})

        record_audit_log(
            current_user.get("email"),
            "Updated user",
            {"target_email": updated_user.get("email"), "role": updated_user.get("role")},
        )

        return jsonify(serialize_user(updated_user))

    @app.route("/api/users/<user_id>", methods=["DELETE"])
    @admin_required
    def delete_user(user_id: str):
        user_document, load_error = fetch_document(users_collection, user_id, "User")
        if load_error:
            return load_error

        users_collection.delete_one({"_id": user_document["_id"]})

        record_audit_log(
            current_user.get("email"),
            "Deleted user",
            {"target_email": user_document.get("email")},
        )

        return jsonify({"message": "User removed."})

    # Password reset
    @app.route("/api/users/forgotpassword", methods=["POST"])
    def forgot_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))

        if not email:
            return jsonify({"message": "Email is required."}), 400

        user = users_collection.find_one({"email": email})
        if not user:
            return (
                jsonify(
                    {
                        "message": "Sorry, we could not find the email. Please try with a correct email again."
                    }
                ),
                404,
            )

        token, expires_at = begin_password_reset(user)
        sent, error_details = send_password_reset_email(user, token)
        if not sent:
            clear_password_reset_state(user["_id"])
            app.logger.error(
                "Password reset email delivery failed for %s: %s",
                email,
                error_details or "Unknown delivery error",
            )
            return jsonify({"message": "Email could not be sent."}), 500

        app.logger.info("Password reset email sent to %s", email)
        record_audit_log(email, "Requested password reset")

        return jsonify(
            {
                "success": True,
                "message": "A password reset link has been sent to your email.",
                "expires_at": isoformat_or_none(expires_at),
            }
        )

    @app.route("/api/users/forgotpassword/check", methods=["POST"])
    def check_reset_token():
        payload = request.get_json(silent=True) or {}
        token = str(
            payload.get("reset_token") or payload.get("resetToken") or ""
        ).strip()

        if not token:
            return jsonify({"message": "Please enter the verification code."}), 400

        user = users_collection.find_one(
            {
                "reset_password_token": hash_reset_token(token),
                "reset_password_expire": {"$gt": datetime.utcnow()},
            }
        )
        if not user:
            return (
                jsonify(
                    {"message": "Sorry, the verification code is not correct or expired."}
                ),
                400,
            )

        return jsonify({"verified": True})

    @app.route("/api/users/resetpassword", methods=["PUT"])
    def reset_password():
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        new_password = str(
            payload.get("new_password") or payload.get("newPassword") or ""
        )
        token = str(
            payload.get("reset_token") or payload.get("resetToken") or ""
        ).strip()

        if not email or not new_password:
            return (
                jsonify({"message": "Email and new password are required."}),
                400,
            )

        query = {
            "email": email,
            "reset_password_expire": {"$gt": datetime.utcnow()},
        }
        if token:
            query["reset_password_token"] = hash_reset_token(token)

        user = users_collection.find_one_and_update(
            query,
            {
                "$set": {
                    "password": hash_password(new_password),
                    "updated_at": datetime.utcnow(),
                },
                "$unset": {
                    "reset_password_token": "",
                    "reset_password_expire": "",
                },
            },
        )
        if not user:
            return jsonify({"message": "Invalid or expired reset token."}), 400

        record_audit_log(email, "Reset password", {"context": "password_reset"})

        return jsonify({"success": True, "message": "Password reset."})

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        page_size = app.config["PRODUCTS_PAGE_SIZE"]
        page = min(safe_positive_int(request.args.get("pageNumber"), 1), MAX_PAGE_NUMBER)
        keyword = str(request.args.get("keyword") or "").strip()

        query: Dict[str, object] = {}
        if keyword:
            query = {"name": {"$regex": re.escape(keyword), "$options": "i"}}

        total = products_collection.count_documents(query)
        fallback = False
        if keyword and total == 0:
            fallback = True
            query = {}
            total = products_collection.count_documents(query)

        product_docs = (
            products_collection.find(query)
            .sort("_id", ASCENDING)
            .skip(page_size * (page - 1))
            .limit(page_size)
        )

        response_payload = {
            "products": [serialize_product(document) for document in product_docs],
            "page": page,
            "pages": math.ceil(total / page_size) if page_size else 0,
            "fallback": fallback,
        }
        if fallback:
            response_payload["message"] = (
                "No product found for the keyword, returning all products."
            )
        return jsonify(response_payload)

    @app.route("/api/products/top", methods=["GET"])
    def get_top_products():
        product_docs = (
            products_collection.find()
            .sort("rating", DESCENDING)
            .limit(app.config["TOP_PRODUCTS_LIMIT"])
        )
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_document(
            products_collection, product_id, "Product"
        )
        if load_error:
            return load_error
        return jsonify(serialize_product(product_document))

    @app.route("/api/products", methods=["POST"])
    @admin_required
    def create_product():
        payload = request.get_json(silent=True) or {}
        timestamp = datetime.utcnow()
        product_document = {
            "user": current_user["_id"],
            "name": str(payload.get("name") or "Sample product").strip(),
            "brand": str(payload.get("brand") or "Sample brand").strip(),
            "category": str(payload.get("category") or "Sample category").strip(),
            "description": str(
                payload.get("description") or "Sample description"
            ).strip(),
            "image": str(payload.get("image") or "/images/sample.jpg").strip(),
            "price": round(max(safe_float(payload.get("price"), 0.0), 0.0), 2),
            "count_in_stock": safe_positive_int(
                payload.get("count_in_stock", payload.get("countInStock")), 0
            ),
            "rating": 0.0,
            "num_reviews": 0,
            "reviews": [],
            "version": 0,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        products_collection.insert_one(product_document)

        record_audit_log(
            current_user.get("email"),
            "Created product",
            {"product_id": product_document["_id"], "product_name": product_document["name"]},
        )

        return jsonify(serialize_product(product_document)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @admin_required
    def update_product(product_id: str):
        product_document, load_error = fetch_document(
            products_collection, product_id, "Product"
        )
        if load_error:
            return load_error

        payload = request.get_json(silent=True) or {}
        updates: Dict[str, object] = {}
        for field in ("name", "brand", "category", "description", "image"):
            if field in payload and payload.get(field) is not None:
                updates[field] = str(payload.get(field)).strip()
        if "price" in payload:
            price_value = safe_float(payload.get("price"), -1.0)
            if price_value < 0:
                return jsonify({"message": "Price must be a non-negative number."}), 400
            updates["price"] = round(price_value, 2)
        if "count_in_stock" in payload or "countInStock" in payload:
            updates["count_in_stock"] = safe_positive_int(
                payload.get("count_in_stock", payload.get("countInStock")), 0
            )
        updates["updated_at"] = datetime.utcnow()

        products_collection.update_one(
            {"_id": product_document["_id"]}, {"$set": updates}
        )
        updated_product = products_collection.find_one({"_id": product_document["_id"]})
        if not updated_product:
            return jsonify({"message": "Product not found."}), 404

        record_audit_log(
            current_user.get("email"),
            "Updated product",
            {"product_id": product_document["_id"], "product_name": updated_product.get("name")},
        )

        return jsonify(serialize_product(updated_product))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @admin_required
    def delete_product(product_id: str):
        product_document, load_error = fetch_document(
            products_collection, product_id, "Product"
        )
        if load_error:
            return load_error

        products_collection.delete_one({"_id": product_document["_id"]})
        remove_product_image(product_document.get("image"))

        record_audit_log(
            current_user.get("email"),
            "Deleted product",
            {
                "product_id": product_document["_id"],
                "product_name": product_document.get("name", ""),
            },
        )

        return jsonify({"message": "Product removed."})

    @app.route("/api/upload", methods=["POST"])
    @admin_required
    def upload_product_image():
        stored_filename, upload_error = save_product_image(request.files.get("image"))
        if upload_error:
            return jsonify({"message": upload_error}), 400

        image_path = f"/uploads/{stored_filename}"
        record_audit_log(
            current_user.get("email"), "Uploaded product image", {"image": image_path}
        )

        return jsonify({"message": "Image uploaded.", "image": image_path}), 201

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["PRODUCT_UPLOAD_FOLDER"], filename)

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def create_product_review(product_id: str):
        object_id = parse_object_id(product_id)
        if object_id is None:
            return jsonify({"message": "Invalid product identifier."}), 400

        payload = request.get_json(silent=True) or {}
        rating = safe_float(payload.get("rating"), 0.0)
        if not 1 <= rating <= 5:
            return jsonify({"message": "Rating must be between 1 and 5."}), 400
        comment = str(payload.get("comment") or "").strip()

        review_document, review_error = append_review(
            object_id, current_user, rating, comment
        )
        if review_error:
            return review_error

        record_audit_log(
            current_user.get("email"),
            "Added review",
            {"product_id": object_id, "rating": rating},
        )

        return (
            jsonify({"message": "Review added.", "review": serialize_review(review_document)}),
            201,
        )

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        payload = request.get_json(silent=True) or {}
        raw_items = payload.get("order_items") or payload.get("orderItems") or []

        if not isinstance(raw_items, list) or not raw_items:
            return jsonify({"message": "No order items."}), 400

        order_items: List[Dict] = []
        for entry in raw_items:
            normalized_entry = normalize_order_item(entry)
            if not normalized_entry:
                return (
                    jsonify({"message": "Each order item needs a valid product reference."}),
                    400,
                )
            order_items.append(normalized_entry)

        order_document = {
            "user": current_user["_id"],
            "order_items": order_items,
            "shipping_address": normalize_address_payload(
                payload.get("shipping_address") or payload.get("shippingAddress")
            ),
            "payment_method": str(
                payload.get("payment_method") or payload.get("paymentMethod") or ""
            ).strip(),
            "items_price": round(
                safe_float(payload.get("items_price", payload.get("itemsPrice")), 0.0), 2
            ),
            "shipping_price": round(
                safe_float(payload.get("shipping_price", payload.get("shippingPrice")), 0.0),
                2,
            ),
            "tax_price": round(
                safe_float(payload.get("tax_price", payload.get("taxPrice")), 0.0), 2
            ),
            "total_price": round(
                safe_float(payload.get("total_price", payload.get("totalPrice")), 0.0), 2
            ),
            "is_paid": False,
            "is_sent": False,
            "is_delivered": False,
            "created_at": datetime.utcnow(),
        }
        orders_collection.insert_one(order_document)

        record_audit_log(
            current_user.get("email"),
            "Created order",
            {"order_id": order_document["_id"], "total": order_document["total_price"]},
        )

        return jsonify(serialize_order(order_document)), 201

    @app.route("/api/orders/myorders", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        cursor = orders_collection.find({"user": current_user["_id"]}).sort(
            "created_at", DESCENDING
        )
        return jsonify([serialize_order(document) for document in cursor])

    @app.route("/api/orders", methods=["GET"])
    @admin_required
    def list_all_orders():
        order_docs = list(orders_collection.find().sort("created_at", DESCENDING))
        owner_ids = {document.get("user") for document in order_docs if document.get("user")}
        owners = {
            user["_id"]: {"id": str(user["_id"]), "name": user.get("name", "") or ""}
            for user in users_collection.find({"_id": {"$in": list(owner_ids)}})
        }
        return jsonify(
            [
                serialize_order(document, owner=owners.get(document.get("user")))
                for document in order_docs
            ]
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        order_document, load_error = fetch_document(orders_collection, order_id, "Order")
        if load_error:
            return load_error

        if not can_view_order(order_document, current_user):
            return jsonify({"message": "Not authorized to view this order."}), 403

        owner = None
        owner_document = users_collection.find_one({"_id": order_document.get("user")})
        if owner_document:
            owner = {
                "id": str(owner_document["_id"]),
                "name": owner_document.get("name", "") or "",
                "email": owner_document.get("email", "") or "",
            }
        return jsonify(serialize_order(order_document, owner=owner))

    def apply_order_transition(order_document, updates: Dict[str, object], action: str):
        orders_collection.update_one({"_id": order_document["_id"]}, {"$set": updates})
        updated_order = orders_collection.find_one({"_id": order_document["_id"]})
        if not updated_order:
            return jsonify({"message": "Order not found."}), 404

        record_audit_log(
            current_user.get("email"), action, {"order_id": order_document["_id"]}
        )
        return jsonify(serialize_order(updated_order))

    @app.route("/api/orders/<order_id>/pay", methods=["PUT"])
    @jwt_required()
    def update_order_to_paid(order_id: str):
        order_document, load_error = fetch_document(orders_collection, order_id, "Order")
        if load_error:
            return load_error

        if not can_view_order(order_document, current_user):
            return jsonify({"message": "Not authorized to pay for this order."}), 403

        payload = request.get_json(silent=True) or {}
        payer = payload.get("payer") if isinstance(payload.get("payer"), dict) else {}
        payment_result = {
            "id": str(payload.get("id") or ""),
            "status": str(payload.get("status") or ""),
            "update_time": str(payload.get("update_time") or ""),
            "email_address": normalize_email(payer.get("email_address")),
        }
        return apply_order_transition(
            order_document,
            {"is_paid": True, "paid_at": datetime.utcnow(), "payment_result": payment_result},
            "Marked order paid",
        )

    @app.route("/api/orders/<order_id>/sent", methods=["PUT"])
    @admin_required
    def update_order_to_sent(order_id: str):
        order_document, load_error = fetch_document(orders_collection, order_id, "Order")
        if load_error:
            return load_error

        return apply_order_transition(
            order_document,
            {"is_sent": True, "sent_at": datetime.utcnow()},
            "Marked order sent",
        )

    @app.route("/api/orders/<order_id>/deliver", methods=["PUT"])
    @admin_required
    def update_order_to_delivered(order_id: str):
        order_document, load_error = fetch_document(orders_collection, order_id, "Order")
        if load_error:
            return load_error

        return apply_order_transition(
            order_document,
            {"is_delivered": True, "delivered_at": datetime.utcnow()},
            "Marked order delivered",
        )

    # --- Admin Routes ---

    @app.route("/api/admin/logs", methods=["GET"])
    @admin_required
    def admin_list_logs():
        limit = min(safe_positive_int(request.args.get("limit"), 0) or 100, 500)
        cursor = (
            audit_logs_collection.find()
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(limit)
        )
        return jsonify({"logs": [serialize_audit_log(document) for document in cursor]})

    @app.route("/api/config/paypal", methods=["GET"])
    def get_paypal_config():
        return jsonify({"client_id": app.config["PAYPAL_CLIENT_ID"]})

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # --- CLI ---

    @app.cli.command("seed")
    @click.option(
        "--destroy",
        is_flag=True,
        help="Remove all users, products and orders without importing sample data.",
    )
    def seed_command(destroy: bool):
        """Replace users, products and orders with the sample catalog."""
        users_collection.delete_many({})
        products_collection.delete_many({})
        orders_collection.delete_many({})

        if destroy:
            app.logger.info("Seed data destroyed")
            click.echo("Data destroyed.")
            return

        timestamp = datetime.utcnow()
        admin_id = None
        for entry in SEED_USERS:
            user_document = {
                "name": entry["name"],
                "email": entry["email"],
                "password": hash_password(entry["password"]),
                "role": normalize_role(entry["role"]),
                "created_at": timestamp,
            }
            users_collection.insert_one(user_document)
            if user_document["role"] == "admin" and admin_id is None:
                admin_id = user_document["_id"]

        products_collection.insert_many(
            [
                {
                    **product,
                    "user": admin_id,
                    "rating": 0.0,
                    "num_reviews": 0,
                    "reviews": [],
                    "version": 0,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
                for product in SEED_PRODUCTS
            ]
        )

        app.logger.info(
            "Seeded %s users and %s products", len(SEED_USERS), len(SEED_PRODUCTS)
        )
        click.echo("Data imported.")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    create_app().run(host="0.0.0.0", port=port)
