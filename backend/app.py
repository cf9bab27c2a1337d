import os
from datetime import datetime, timedelta
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import JWTManager, get_jwt_identity
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from cart import (
    CartConflict,
    CartEngine,
    CartItemNotFound,
    UserNotFound,
    serialize_cart_item,
)
from images import DEFAULT_AVATAR_ID, ImageHost
from security import (
    admin_required,
    check_password,
    hash_password,
    is_token_revoked,
    isoformat,
    issue_token,
    self_or_admin_required,
    token_required,
    user_claims,
)
from validation import (
    parse_admin_flag,
    validate_cart_item,
    validate_cart_key,
    validate_cart_update,
    validate_create_product,
    validate_create_user,
    validate_login,
    validate_password_change,
    validate_update_product,
    validate_update_user,
)

load_dotenv()

DEFAULT_AVATAR_URL = (
    "https://res.cloudinary.com/dnqyfwhbk/image/upload/v1747068681/"
    "default-user-avatar_qezhg0.svg"
)
MEGABYTE = 1024 * 1024


def duplicate_key_message(error: DuplicateKeyError) -> str:
    key_pattern = (error.details or {}).get("keyPattern") or {}
    if "username" in key_pattern:
        return "This username is already taken."
    return "An account with this email already exists."


def create_app(test_config: Optional[Dict] = None, db=None, image_host=None) -> Flask:
    """Create and configure the Flask application.

    ``db`` and ``image_host`` may be supplied by the caller; otherwise a
    PyMongo connection and a local-disk image host are created from config.
    """
    app = Flask(__name__)

    # Honor proxy headers so generated image links keep the public origin.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv(
        "TOKEN_SECRET_KEY", "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(
        days=int(os.getenv("TOKEN_EXPIRES_DAYS", "30"))
    )
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/blisscet"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * MEGABYTE
    app.config["PRODUCT_IMAGE_MAX_BYTES"] = (
        int(os.getenv("PRODUCT_IMAGE_MAX_MB", "16")) * MEGABYTE
    )
    app.config["USER_AVATAR_MAX_BYTES"] = (
        int(os.getenv("USER_AVATAR_MAX_MB", "5")) * MEGABYTE
    )
    app.config["UPLOAD_FOLDER"] = os.getenv(
        "UPLOAD_FOLDER", os.path.join(app.root_path, "uploads")
    )
    app.config["BCRYPT_ROUNDS"] = int(os.getenv("BCRYPT_ROUNDS", "10"))
    app.config["CART_WRITE_RETRIES"] = int(os.getenv("CART_WRITE_RETRIES", "3"))
    app.config["DEFAULT_AVATAR_URL"] = (
        os.getenv("DEFAULT_AVATAR_URL", DEFAULT_AVATAR_URL) or DEFAULT_AVATAR_URL
    )
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO").upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    allowed_origins = []
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)

    CORS(app, origins=allowed_origins or "*")

    jwt = JWTManager(app)
    if db is None:
        mongo = PyMongo(app)
        db = mongo.db
    if image_host is None:
        image_host = ImageHost(app.config["UPLOAD_FOLDER"])
    cart_engine = CartEngine(db.users, max_retries=app.config["CART_WRITE_RETRIES"])

    for field in ("username", "email"):
        try:
            db.users.create_index(field, unique=True)
        except Exception as exc:
            app.logger.warning("Unable to ensure unique index on users.%s: %s", field, exc)

    # --- Token callbacks ---

    @jwt.token_in_blocklist_loader
    def check_if_token_revoked(jwt_header, jwt_payload):
        return is_token_revoked(db.users, jwt_payload)

    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify({"message": "No token provided!"}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify({"message": "Invalid token!"}), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify({"message": "Token has expired!"}), 401

    @jwt.revoked_token_loader
    def revoked_token(jwt_header, jwt_payload):
        return jsonify({"message": "Token has been revoked!"}), 401

    # --- Helpers ---

    def default_avatar() -> Dict[str, str]:
        return {"public_id": DEFAULT_AVATAR_ID, "url": app.config["DEFAULT_AVATAR_URL"]}

    def json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def request_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        return payload or json_payload()

    def parse_object_id(value, label: str = "user"):
        try:
            return ObjectId(value), None
        except (InvalidId, TypeError):
            return None, (jsonify({"message": f"Invalid {label} identifier."}), 400)

    def current_user_id() -> ObjectId:
        return ObjectId(get_jwt_identity())

    def upload_image(field: str, folder: str, max_bytes: int):
        image_file = request.files.get(field)
        if not image_file or not getattr(image_file, "filename", ""):
            return None, None
        reference, image_error = image_host.upload(
            image_file, folder, max_bytes, request.host_url
        )
        if image_error:
            app.logger.warning("Rejected %s upload: %s", field, image_error)
        return reference, image_error

    def serialize_user(user_document) -> Dict:
        if not user_document:
            return {}
        profile = user_claims(user_document)
        profile["cart"] = [
            serialize_cart_item(item) for item in user_document.get("cart") or []
        ]
        return profile

    def serialize_product(product_document) -> Dict:
        if not product_document:
            return {}
        image = product_document.get("product_image") or {}
        return {
            "_id": str(product_document.get("_id")),
            "productImage": {
                "public_id": image.get("public_id", ""),
                "url": image.get("url", ""),
            },
            "name": product_document.get("name", ""),
            "category": product_document.get("category", ""),
            "price": product_document.get("price", 0),
            "count": product_document.get("count", 1),
            "createdAt": isoformat(product_document.get("created_at")),
            "updatedAt": isoformat(product_document.get("updated_at")),
        }

    def find_identity_conflict(email=None, username=None, exclude_id=None) -> Optional[str]:
        if email:
            query = {"email": email}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if db.users.find_one(query, {"_id": 1}):
                return "An account with this email already exists."
        if username:
            query = {"username": username}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if db.users.find_one(query, {"_id": 1}):
                return "This username is already taken."
        return None

    def create_account(*, admin: bool):
        payload = request_payload()
        cleaned, error = validate_create_user(payload)
        if error:
            return jsonify({"message": error}), 400

        conflict = find_identity_conflict(cleaned["email"], cleaned["username"])
        if conflict:
            return jsonify({"message": conflict}), 400

        avatar, image_error = upload_image(
            "userAvatar", "users", app.config["USER_AVATAR_MAX_BYTES"]
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        timestamp = datetime.utcnow()
        user_document = {
            "username": cleaned["username"],
            "first_name": cleaned["first_name"],
            "last_name": cleaned["last_name"],
            "email": cleaned["email"],
            "password": hash_password(cleaned["password"], app.config["BCRYPT_ROUNDS"]),
            "avatar": avatar or default_avatar(),
            "admin": admin,
            "cart": [],
            "version": 0,
            "created_at": timestamp,
            "updated_at": timestamp,
        }

        try:
            insert_result = db.users.insert_one(user_document)
        except DuplicateKeyError as exc:
            return jsonify({"message": duplicate_key_message(exc)}), 400

        created_user = db.users.find_one({"_id": insert_result.inserted_id})
        app.logger.info(
            "Created %s account %s",
            "admin" if admin else "standard",
            cleaned["email"],
        )
        return jsonify({**serialize_user(created_user), "token": issue_token(created_user)}), 201

    def delete_account(user_id: str):
        target_object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        user_to_delete = db.users.find_one({"_id": target_object_id})
        if not user_to_delete:
            return jsonify({"message": "User Not Found"}), 404

        db.users.delete_one({"_id": target_object_id})
        image_host.remove((user_to_delete.get("avatar") or {}).get("public_id"))

        app.logger.info("Deleted account %s", user_to_delete.get("email"))
        return jsonify({"message": "User has been deleted successfully"})

    # --- Error handlers ---

    @app.errorhandler(404)
    def page_not_found(error):
        return jsonify({"message": f"Not Found - {request.path}"}), 404

    @app.errorhandler(RequestEntityTooLarge)
    def request_too_large(error):
        limit_mb = app.config["MAX_CONTENT_LENGTH"] // MEGABYTE
        return jsonify({"message": f"File too large. The limit is {limit_mb} MB."}), 413

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def unexpected_error(error):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "Something went wrong. Please try again later."}), 500

    # --- Public routes ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(image_host.upload_folder, filename)

    @app.route("/register", methods=["POST"])
    def register():
        return create_account(admin=False)

    @app.route("/login", methods=["POST"])
    def login():
        cleaned, error = validate_login(json_payload())
        if error:
            return jsonify({"message": error}), 400

        user = db.users.find_one({"email": cleaned["email"]})
        if not user:
            return jsonify({"message": "User is not registerd!"}), 400
        if not check_password(cleaned["password"], user.get("password")):
            return jsonify({"message": "Incorect user data!"}), 400

        app.logger.info("Signed in %s", cleaned["email"])
        return jsonify({**serialize_user(user), "token": issue_token(user)})

    @app.route("/products", methods=["GET"])
    def list_products():
        return jsonify([serialize_product(document) for document in db.products.find()])

    # --- Cart ---

    @app.route("/products", methods=["POST"])
    @token_required
    def add_cart_item():
        cleaned, error = validate_cart_item(json_payload())
        if error:
            return jsonify({"message": error}), 400

        try:
            cart = cart_engine.add(current_user_id(), cleaned)
        except UserNotFound as exc:
            return jsonify({"message": exc.message}), 404
        except CartConflict as exc:
            return jsonify({"message": exc.message}), 409

        return (
            jsonify(
                {
                    "message": "Product added to cart successfully",
                    "cart": [serialize_cart_item(item) for item in cart],
                }
            ),
            201,
        )

    @app.route("/products", methods=["PATCH"])
    @token_required
    def update_cart_item():
        cleaned, error = validate_cart_update(json_payload())
        if error:
            return jsonify({"message": error}), 400

        try:
            item = cart_engine.update_count(
                current_user_id(), cleaned["key"], cleaned["count"]
            )
        except (UserNotFound, CartItemNotFound) as exc:
            return jsonify({"message": exc.message}), 404
        except CartConflict as exc:
            return jsonify({"message": exc.message}), 409

        return jsonify(
            {
                "message": "Product updated successfully",
                "product": serialize_cart_item(item),
            }
        )

    @app.route("/cart", methods=["GET"])
    @token_required
    def list_cart():
        try:
            cart = cart_engine.list_items(current_user_id())
        except UserNotFound as exc:
            return jsonify({"message": exc.message}), 404
        return jsonify([serialize_cart_item(item) for item in cart])

    @app.route("/cart", methods=["DELETE"])
    @token_required
    def remove_cart_item():
        cleaned, error = validate_cart_key(json_payload())
        if error:
            return jsonify({"message": error}), 400

        try:
            cart_engine.remove(current_user_id(), cleaned["key"])
        except (UserNotFound, CartItemNotFound) as exc:
            return jsonify({"message": exc.message}), 404
        except CartConflict as exc:
            return jsonify({"message": exc.message}), 409

        return jsonify({"message": "Product deleted successfully"})

    # --- User settings ---

    @app.route("/userSettings", methods=["GET"])
    @token_required
    def get_own_settings():
        user = db.users.find_one({"_id": current_user_id()}, {"password": 0})
        if not user:
            return jsonify({"message": "User not found"}), 404
        return jsonify(serialize_user(user))

    @app.route("/userSettings/<user_id>", methods=["GET"])
    @self_or_admin_required
    def get_user_settings(user_id: str):
        target_object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        user = db.users.find_one({"_id": target_object_id}, {"password": 0})
        if not user:
            return jsonify({"message": "User not found"}), 404
        return jsonify(serialize_user(user))

    @app.route("/userSettings/<user_id>", methods=["PATCH"])
    @self_or_admin_required
    def update_user_settings(user_id: str):
        target_object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        user = db.users.find_one({"_id": target_object_id}, {"avatar": 1})
        if not user:
            return jsonify({"message": "User not found"}), 404

        updates, error = validate_update_user(request_payload())
        if error:
            return jsonify({"message": error}), 400

        conflict = find_identity_conflict(
            updates.get("email"), updates.get("username"), exclude_id=target_object_id
        )
        if conflict:
            return jsonify({"message": conflict}), 400

        avatar, image_error = upload_image(
            "userAvatar", "users", app.config["USER_AVATAR_MAX_BYTES"]
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        if avatar:
            updates["avatar"] = avatar

        updates["updated_at"] = datetime.utcnow()
        try:
            updated_user = db.users.find_one_and_update(
                {"_id": target_object_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            return jsonify({"message": duplicate_key_message(exc)}), 400

        if not updated_user:
            return jsonify({"message": "User not found"}), 404

        if avatar:
            image_host.remove((user.get("avatar") or {}).get("public_id"))

        profile = serialize_user(updated_user)
        if get_jwt_identity() == str(target_object_id):
            profile["token"] = issue_token(updated_user)
        return jsonify(profile)

    @app.route("/userSettingsCP/<user_id>", methods=["PATCH"])
    @self_or_admin_required
    def change_user_password(user_id: str):
        target_object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        cleaned, error = validate_password_change(json_payload())
        if error:
            return jsonify({"message": error}), 400

        update_result = db.users.update_one(
            {"_id": target_object_id},
            {
                "$set": {
                    "password": hash_password(
                        cleaned["password"], app.config["BCRYPT_ROUNDS"]
                    ),
                    "updated_at": datetime.utcnow(),
                }
            },
        )
        if not update_result.matched_count:
            return jsonify({"message": "User not found!"}), 404

        return jsonify({"message": "Password has been changed successfully"})

    @app.route("/userSettings/<user_id>", methods=["DELETE"])
    @self_or_admin_required
    def delete_user_settings(user_id: str):
        return delete_account(user_id)

    # --- Dashboard: accounts ---

    @app.route("/dashboard/admin", methods=["GET"])
    @admin_required
    def list_admins():
        users = db.users.find({}, {"password": 0})
        return jsonify([serialize_user(user) for user in users if user.get("admin") is True])

    @app.route("/dashboard/admin", methods=["POST"])
    @admin_required
    def create_admin():
        return create_account(admin=True)

    @app.route("/dashboard/admin/<user_id>", methods=["PATCH"])
    @admin_required
    def update_admin_flag(user_id: str):
        target_object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        if not db.users.find_one({"_id": target_object_id}, {"_id": 1}):
            return jsonify({"message": "User Not Found"}), 404

        payload = json_payload()
        desired_state = parse_admin_flag(payload.get("admin"))
        if desired_state is None:
            return jsonify({"message": '"admin" must be a boolean'}), 400

        updated_user = db.users.find_one_and_update(
            {"_id": target_object_id},
            {"$set": {"admin": desired_state, "updated_at": datetime.utcnow()}},
            projection={"password": 0},
            return_document=ReturnDocument.AFTER,
        )
        app.logger.info(
            "Set admin=%s for %s", desired_state, updated_user.get("email")
        )
        return jsonify(serialize_user(updated_user))

    @app.route("/dashboard/admin/<user_id>", methods=["DELETE"])
    @admin_required
    def delete_admin(user_id: str):
        return delete_account(user_id)

    @app.route("/dashboard/users", methods=["GET"])
    @admin_required
    def list_users():
        return jsonify([serialize_user(user) for user in db.users.find({}, {"password": 0})])

    @app.route("/dashboard/users/<user_id>", methods=["DELETE"])
    @admin_required
    def delete_user(user_id: str):
        return delete_account(user_id)

    # --- Dashboard: catalog ---

    @app.route("/dashboard/products", methods=["GET"])
    @admin_required
    def list_dashboard_products():
        return jsonify([serialize_product(document) for document in db.products.find()])

    @app.route("/dashboard/products", methods=["POST"])
    @admin_required
    def create_product():
        cleaned, error = validate_create_product(request_payload())
        if error:
            return jsonify({"message": error}), 400

        product_image, image_error = upload_image(
            "productImage", "products", app.config["PRODUCT_IMAGE_MAX_BYTES"]
        )
        if image_error:
            return jsonify({"message": image_error}), 400

        timestamp = datetime.utcnow()
        product_document = {
            **cleaned,
            "product_image": product_image or {},
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        result = db.products.insert_one(product_document)
        created_product = db.products.find_one({"_id": result.inserted_id})

        app.logger.info("Created product %s (%s)", cleaned["name"], result.inserted_id)
        return jsonify(serialize_product(created_product)), 201

    @app.route("/dashboard/products/<product_id>", methods=["PATCH"])
    @admin_required
    def update_product(product_id: str):
        target_object_id, id_error = parse_object_id(product_id, "product")
        if id_error:
            return id_error

        if not db.products.find_one({"_id": target_object_id}, {"_id": 1}):
            return jsonify({"message": "Product Not Found"}), 404

        updates, error = validate_update_product(request_payload())
        if error:
            return jsonify({"message": error}), 400

        product_image, image_error = upload_image(
            "productImage", "products", app.config["PRODUCT_IMAGE_MAX_BYTES"]
        )
        if image_error:
            return jsonify({"message": image_error}), 400
        if product_image:
            updates["product_image"] = product_image

        updates["updated_at"] = datetime.utcnow()
        updated_product = db.products.find_one_and_update(
            {"_id": target_object_id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not updated_product:
            return jsonify({"message": "Product Not Found"}), 404

        app.logger.info("Updated product %s", product_id)
        return jsonify(serialize_product(updated_product))

    @app.route("/dashboard/products/<product_id>", methods=["DELETE"])
    @admin_required
    def delete_product(product_id: str):
        target_object_id, id_error = parse_object_id(product_id, "product")
        if id_error:
            return id_error

        # Stored images stay: cart lines keep pointing at them.
        result = db.products.delete_one({"_id": target_object_id})
        if not result.deleted_count:
            return jsonify({"message": "Product Not Found"}), 404

        app.logger.info("Deleted product %s", product_id)
        return jsonify({"message": "Product has been deleted successfully"})

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
