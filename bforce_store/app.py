import os
import re
from datetime import datetime, timedelta
from functools import wraps
from typing import Dict, List, Optional, Tuple

import bcrypt
import click
import requests
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, send_from_directory, session
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .assets import (
    assign_variant_ids,
    collect_image_keys,
    group_uploads_by_variant_index,
    orphaned_keys,
    parse_variant_index,
    reconcile_variants,
    unique_preserve,
)
from .catalog import (
    normalize_tshirt_payload,
    serialize_showcase,
    serialize_tshirt,
    strip_images,
)
from .storage import (
    HERO_CAROUSEL_FOLDER,
    MOST_LOVED_DESKTOP_FOLDER,
    MOST_LOVED_MOBILE_FOLDER,
    TSHIRT_FOLDER,
    AssetJanitor,
    LocalObjectStore,
    ObjectStoreError,
    build_object_store,
    discard_uploaded,
    upload_images,
)

load_dotenv()

HERO_CAROUSEL_NAME = "mainHeroCarousel"
MOST_LOVED_NAME = "mainMostLoved"
HERO_IMAGE_FIELDS = ("images",)
MOST_LOVED_IMAGE_FIELDS = ("desktop_images", "mobile_images")
# (form field, document field, storage folder, route segment)
MOST_LOVED_UPLOADS = (
    ("desktopImages", "desktop_images", MOST_LOVED_DESKTOP_FOLDER, "desktop"),
    ("mobileImages", "mobile_images", MOST_LOVED_MOBILE_FOLDER, "mobile"),
)
INSTAGRAM_FIELDS = "id,media_url,permalink,media_type,thumbnail_url"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def create_app(test_config: Optional[Dict] = None, db=None, object_store=None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

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
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    app.config.update(
        SECRET_KEY=os.getenv("SESSION_SECRET", "change_this_secret"),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=env_flag("SESSION_COOKIE_SECURE"),
        PERMANENT_SESSION_LIFETIME=timedelta(hours=5),
        MONGO_URI=os.getenv("MONGO_URI", "mongodb://localhost:27017/bforce"),
        MAX_CONTENT_LENGTH=max_upload_mb * 1024 * 1024,
        STORAGE_BACKEND=os.getenv("STORAGE_BACKEND", ""),
        UPLOAD_FOLDER=os.getenv("UPLOAD_FOLDER") or os.path.join(app.root_path, "uploads"),
        UPLOAD_PUBLIC_URL=os.getenv("UPLOAD_PUBLIC_URL", "/uploads/"),
        AWS_REGION=os.getenv("AWS_REGION"),
        AWS_ACCESS_KEY_ID=os.getenv("AWS_ACCESS_KEY_ID"),
        AWS_SECRET_ACCESS_KEY=os.getenv("AWS_SECRET_ACCESS_KEY"),
        AWS_S3_BUCKET_NAME=os.getenv("AWS_S3_BUCKET_NAME"),
        ASSET_DELETION_MODE=os.getenv("ASSET_DELETION_MODE", "background"),
        INSTAGRAM_TOKEN=os.getenv("INSTAGRAM_TOKEN", ""),
        INSTAGRAM_API_URL=os.getenv("INSTAGRAM_API_URL", "https://graph.instagram.com/me/media"),
        INSTAGRAM_POST_LIMIT=int(os.getenv("INSTAGRAM_POST_LIMIT", "5")),
        INSTAGRAM_TIMEOUT_SECONDS=float(os.getenv("INSTAGRAM_TIMEOUT_SECONDS", "10")),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())

    # --- Initialize extensions ---
    allowed_origins = [os.getenv("FRONTEND_ORIGIN", "http://localhost:3000").strip()]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")

    if db is None:
        mongo = PyMongo(app)
        db = mongo.db
    if object_store is None:
        object_store = build_object_store(app.config)

    tshirts_collection = db.tshirts
    hero_collection = db.hero_carousels
    most_loved_collection = db.most_loved
    audit_logs_collection = db.audit_logs

    janitor = AssetJanitor(
        object_store,
        db.pending_asset_deletions,
        mode=app.config["ASSET_DELETION_MODE"],
    )
    app.extensions["bforce_store"] = {
        "db": db,
        "object_store": object_store,
        "janitor": janitor,
    }

    try:
        tshirts_collection.create_index("sku", unique=True)
        tshirts_collection.create_index([("created_at", -1)])
        db.users.create_index("email", unique=True)
        hero_collection.create_index("name", unique=True)
        most_loved_collection.create_index("name", unique=True)
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure catalog indexes: %s", exc)

    try:
        audit_logs_collection.create_index([("created_at", -1)])
    except PyMongoError as exc:
        app.logger.warning("Unable to ensure indexes for audit logs: %s", exc)

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def get_current_user():
        if "current_user" in g:
            return g.current_user

        user_document = None
        raw_user_id = session.get("user_id")
        if raw_user_id:
            try:
                user_document = db.users.find_one(
                    {"_id": ObjectId(str(raw_user_id))}, {"email": 1}
                )
            except (InvalidId, TypeError):
                user_document = None
        g.current_user = user_document
        return user_document

    def login_required(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not get_current_user():
                return jsonify({"message": "Unauthorized"}), 401
            return view(*args, **kwargs)

        return wrapper

    def current_email() -> str:
        user_document = get_current_user()
        return normalize_email(user_document.get("email") if user_document else "")

    def sanitize_metadata(metadata: Optional[Dict]) -> Dict[str, str]:
        if not isinstance(metadata, dict):
            return {}
        sanitized: Dict[str, str] = {}
        for key, value in metadata.items():
            if value is None:
                continue
            sanitized[str(key)] = str(value)
        return sanitized

    def record_audit_log(actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
        if not action:
            return
        try:
            audit_logs_collection.insert_one(
                {
                    "user_email": normalize_email(actor_email),
                    "action": action,
                    "metadata": sanitize_metadata(metadata),
                    "created_at": datetime.utcnow(),
                }
            )
        except PyMongoError as exc:
            app.logger.warning("Unable to record audit log: %s", exc)

    def read_payload() -> Dict:
        payload = request.form.to_dict() if request.form else {}
        if not payload and request.is_json:
            payload = request.get_json(silent=True) or {}
        return payload

    def fetch_tshirt(tshirt_id: str):
        try:
            object_id = ObjectId(tshirt_id)
        except (InvalidId, TypeError):
            return None, (jsonify({"message": "Invalid t-shirt identifier."}), 400)

        tshirt_document = tshirts_collection.find_one({"_id": object_id})
        if not tshirt_document:
            return None, (jsonify({"message": "T-shirt not found"}), 404)

        return tshirt_document, None

    def sku_taken(sku: str, exclude_id=None) -> bool:
        query: Dict[str, object] = {"sku": sku}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        return tshirts_collection.find_one(query, {"_id": 1}) is not None

    def collect_variant_files(variant_count: int):
        """Pair each uploaded file with its field name, rejecting stray fields."""
        variant_files = []
        for field_name, image_file in request.files.items(multi=True):
            if not image_file or not getattr(image_file, "filename", ""):
                continue
            index = parse_variant_index(field_name)
            if index is None or index >= variant_count:
                return None, f"Upload field {field_name} does not match any variant."
            variant_files.append((field_name, image_file))
        return variant_files, None

    def upload_variant_images(variant_files) -> Tuple[Optional[Dict[int, List[Dict]]], List[Dict], Optional[str]]:
        uploaded, upload_error = upload_images(
            object_store, [image_file for _, image_file in variant_files], TSHIRT_FOLDER
        )
        if upload_error:
            return None, [], upload_error
        if uploaded:
            app.logger.info("Uploaded %d variant image(s)", len(uploaded))
        field_names = [field_name for field_name, _ in variant_files]
        return group_uploads_by_variant_index(zip(field_names, uploaded)), uploaded, None

    def attach_image_details(images: List[Dict], alt_texts: List[str], links: Optional[List[str]] = None):
        for position, image in enumerate(images):
            if position < len(alt_texts) and alt_texts[position].strip():
                image["alt_text"] = alt_texts[position].strip()
            if links and position < len(links) and links[position].strip():
                image["link"] = links[position].strip()
        return images

    def get_or_create_showcase(collection, name: str, image_fields):
        document = collection.find_one({"name": name})
        if document:
            return document

        timestamp = datetime.utcnow()
        defaults = {"name": name, "created_at": timestamp, "updated_at": timestamp}
        for field in image_fields:
            defaults[field] = []
        try:
            collection.insert_one(defaults)
        except DuplicateKeyError:
            pass
        return collection.find_one({"name": name})

    # --- Error handlers ---

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(PyMongoError)
    @app.errorhandler(ObjectStoreError)
    def handle_upstream_error(error):
        app.logger.error("Upstream storage failure: %s", error, exc_info=error)
        return jsonify({"message": "Server error"}), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return handle_http_error(error)
        app.logger.error("Unhandled error: %s", error, exc_info=error)
        return jsonify({"message": "Server error"}), 500

    # --- CLI ---

    @app.cli.command("purge-assets")
    @click.option("--limit", default=0, help="Maximum number of pending deletions to retry.")
    def purge_assets_command(limit):
        """Retry object deletions left behind in the outbox."""
        deleted, failed = janitor.retry_pending(limit=limit)
        click.echo(f"Deleted {deleted} pending object(s); {failed} still pending.")

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    if isinstance(object_store, LocalObjectStore):

        @app.route("/uploads/<path:filename>")
        def serve_uploaded_file(filename: str):
            return send_from_directory(object_store.root, filename)

    # Auth
    @app.route("/api/auth/signup", methods=["POST"])
    def signup():
        payload = request.get_json(silent=True) or request.form.to_dict()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists"}), 400

        hashed_pw = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
        try:
            insert_result = db.users.insert_one(
                {"email": email, "password": hashed_pw, "created_at": datetime.utcnow()}
            )
        except DuplicateKeyError:
            return jsonify({"message": "User already exists"}), 400

        record_audit_log(email, "Registered new account", {"user_id": str(insert_result.inserted_id)})
        return jsonify({"message": "User registered successfully"}), 201

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or request.form.to_dict()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", "") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not bcrypt.checkpw(password.encode("utf-8"), user["password"]):
            app.logger.info("Rejected login for %s", email)
            return jsonify({"message": "Invalid credentials"}), 400

        session.clear()
        session.permanent = True
        session["user_id"] = str(user["_id"])

        db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": datetime.utcnow()}})
        record_audit_log(
            email,
            "Signed in",
            {"ip": request.headers.get("X-Forwarded-For", request.remote_addr)},
        )

        return jsonify({"message": "Logged in", "user": {"id": str(user["_id"]), "email": email}})

    @app.route("/api/auth/me", methods=["GET"])
    def me():
        user = get_current_user()
        if not user:
            return jsonify({"message": "Not authenticated"}), 401
        return jsonify({"id": str(user["_id"]), "email": user.get("email", "")})

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        session.clear()
        return jsonify({"message": "Logged out"})

    # T-shirts
    @app.route("/api/tshirts", methods=["GET"])
    def list_tshirts():
        query: Dict[str, object] = {}
        search = str(request.args.get("search", "") or "").strip()
        collection = str(request.args.get("collection", "") or "").strip()
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if collection:
            query["collection_type"] = collection

        tshirt_docs = list(tshirts_collection.find(query).sort([("created_at", -1), ("_id", -1)]))
        app.logger.debug("Found %d t-shirts for query %s", len(tshirt_docs), query)
        return jsonify(
            {
                "tshirts": [serialize_tshirt(document) for document in tshirt_docs],
                "count": len(tshirt_docs),
            }
        )

    @app.route("/api/tshirts/<tshirt_id>", methods=["GET"])
    def get_tshirt(tshirt_id: str):
        tshirt_document, load_error = fetch_tshirt(tshirt_id)
        if load_error:
            return load_error
        return jsonify({"tshirt": serialize_tshirt(tshirt_document)})

    @app.route("/api/tshirts", methods=["POST"])
    @login_required
    def create_tshirt():
        fields, validation_error = normalize_tshirt_payload(read_payload())
        if validation_error:
            return jsonify({"message": validation_error}), 400

        if sku_taken(fields["sku"]):
            return jsonify({"message": "A t-shirt with this SKU already exists."}), 400

        descriptors = fields.pop("variants")
        variant_files, files_error = collect_variant_files(len(descriptors))
        if files_error:
            return jsonify({"message": files_error}), 400

        uploads_by_index, uploaded, upload_error = upload_variant_images(variant_files)
        if upload_error:
            return jsonify({"message": upload_error}), 400

        final_variants, _ = reconcile_variants([], descriptors, uploads_by_index)
        timestamp = datetime.utcnow()
        tshirt_document = {
            **fields,
            "variants": assign_variant_ids(final_variants),
            "version": 1,
            "created_at": timestamp,
            "updated_at": timestamp,
        }

        try:
            result = tshirts_collection.insert_one(tshirt_document)
        except DuplicateKeyError:
            discard_uploaded(object_store, uploaded)
            return jsonify({"message": "A t-shirt with this SKU already exists."}), 400
        except PyMongoError:
            discard_uploaded(object_store, uploaded)
            raise

        created = tshirts_collection.find_one({"_id": result.inserted_id})
        record_audit_log(
            current_email(),
            "Created t-shirt",
            {"tshirt_id": str(result.inserted_id), "sku": fields["sku"]},
        )

        return (
            jsonify({"message": "T-shirt added successfully.", "tshirt": serialize_tshirt(created)}),
            201,
        )

    @app.route("/api/tshirts/<tshirt_id>", methods=["PUT"])
    @login_required
    def update_tshirt(tshirt_id: str):
        tshirt_document, load_error = fetch_tshirt(tshirt_id)
        if load_error:
            return load_error

        payload = read_payload()
        fields, validation_error = normalize_tshirt_payload(payload, partial=True)
        if validation_error:
            return jsonify({"message": validation_error}), 400

        expected_version = None
        raw_version = payload.get("version")
        if raw_version not in (None, ""):
            try:
                expected_version = int(raw_version)
            except (TypeError, ValueError):
                return jsonify({"message": "Version must be a whole number."}), 400

        if "sku" in fields and sku_taken(fields["sku"], exclude_id=tshirt_document["_id"]):
            return jsonify({"message": "A t-shirt with this SKU already exists."}), 400

        old_variants = tshirt_document.get("variants") or []
        descriptors = fields.pop("variants", None)
        if descriptors is None:
            descriptors = strip_images(old_variants)

        variant_files, files_error = collect_variant_files(len(descriptors))
        if files_error:
            return jsonify({"message": files_error}), 400

        uploads_by_index, uploaded, upload_error = upload_variant_images(variant_files)
        if upload_error:
            return jsonify({"message": upload_error}), 400

        final_variants, orphaned = reconcile_variants(old_variants, descriptors, uploads_by_index)

        update_filter: Dict[str, object] = {"_id": tshirt_document["_id"]}
        if expected_version is not None:
            update_filter["version"] = expected_version

        try:
            updated = tshirts_collection.find_one_and_update(
                update_filter,
                {
                    "$set": {
                        **fields,
                        "variants": assign_variant_ids(final_variants),
                        "updated_at": datetime.utcnow(),
                    },
                    "$inc": {"version": 1},
                },
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            discard_uploaded(object_store, uploaded)
            return jsonify({"message": "A t-shirt with this SKU already exists."}), 400
        except PyMongoError:
            discard_uploaded(object_store, uploaded)
            raise

        if updated is None:
            discard_uploaded(object_store, uploaded)
            current = tshirts_collection.find_one({"_id": tshirt_document["_id"]}, {"version": 1})
            if current is None or expected_version is None:
                return jsonify({"message": "T-shirt not found"}), 404
            return (
                jsonify(
                    {
                        "message": "This t-shirt was changed by someone else. Reload it and try again.",
                        "version": current.get("version", 1),
                    }
                ),
                409,
            )

        janitor.discard(orphaned, reason=f"tshirt {tshirt_id} update")

        record_audit_log(
            current_email(),
            "Updated t-shirt",
            {"tshirt_id": tshirt_id, "removed_images": len(orphaned)},
        )

        return jsonify({"message": "T-shirt updated successfully.", "tshirt": serialize_tshirt(updated)})

    @app.route("/api/tshirts/<tshirt_id>", methods=["DELETE"])
    @login_required
    def delete_tshirt(tshirt_id: str):
        tshirt_document, load_error = fetch_tshirt(tshirt_id)
        if load_error:
            return load_error

        image_keys = unique_preserve(collect_image_keys(tshirt_document.get("variants")))
        janitor.discard(image_keys, reason=f"tshirt {tshirt_id} delete")

        tshirts_collection.delete_one({"_id": tshirt_document["_id"]})

        record_audit_log(
            current_email(),
            "Deleted t-shirt",
            {"tshirt_id": tshirt_id, "sku": tshirt_document.get("sku", "")},
        )

        return jsonify(
            {
                "message": "T-shirt and associated images removed",
                "deleted_images": len(image_keys),
            }
        )

    # Settings
    @app.route("/api/settings/hero-carousel", methods=["GET"])
    def get_hero_carousel():
        carousel = get_or_create_showcase(hero_collection, HERO_CAROUSEL_NAME, HERO_IMAGE_FIELDS)
        return jsonify(serialize_showcase(carousel, HERO_IMAGE_FIELDS))

    @app.route("/api/settings/hero-carousel", methods=["POST"])
    @login_required
    def update_hero_carousel():
        existing = hero_collection.find_one({"name": HERO_CAROUSEL_NAME})
        old_images = existing.get("images", []) if existing else []

        images_to_save, upload_error = upload_images(
            object_store, request.files.getlist("heroImages"), HERO_CAROUSEL_FOLDER
        )
        if upload_error:
            return jsonify({"message": upload_error}), 400
        attach_image_details(
            images_to_save, request.form.getlist("altText"), request.form.getlist("link")
        )

        timestamp = datetime.utcnow()
        try:
            updated = hero_collection.find_one_and_update(
                {"name": HERO_CAROUSEL_NAME},
                {
                    "$set": {"images": images_to_save, "updated_at": timestamp},
                    "$setOnInsert": {"created_at": timestamp},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError:
            discard_uploaded(object_store, images_to_save)
            raise

        orphaned = orphaned_keys(old_images, images_to_save)
        janitor.discard(orphaned, reason="hero carousel update")

        record_audit_log(
            current_email(),
            "Updated hero carousel",
            {"images": len(images_to_save), "removed_images": len(orphaned)},
        )

        return jsonify(serialize_showcase(updated, HERO_IMAGE_FIELDS)), 201

    @app.route("/api/settings/hero-carousel/<path:image_key>", methods=["DELETE"])
    @login_required
    def delete_hero_carousel_image(image_key: str):
        carousel = hero_collection.find_one({"name": HERO_CAROUSEL_NAME})
        if not carousel:
            return jsonify({"message": "Carousel not found"}), 404

        images = carousel.get("images") or []
        remaining = [image for image in images if image.get("key") != image_key]
        if len(remaining) == len(images):
            return jsonify({"message": "Image not found"}), 404

        hero_collection.update_one(
            {"_id": carousel["_id"]},
            {"$set": {"images": remaining, "updated_at": datetime.utcnow()}},
        )
        janitor.discard([image_key], reason="hero carousel image delete")

        record_audit_log(current_email(), "Removed hero carousel image", {"key": image_key})

        updated = hero_collection.find_one({"_id": carousel["_id"]})
        return jsonify(
            {
                "message": "Image deleted successfully",
                "carousel": serialize_showcase(updated, HERO_IMAGE_FIELDS),
            }
        )

    @app.route("/api/settings/most-loved", methods=["GET"])
    def get_most_loved():
        most_loved = get_or_create_showcase(
            most_loved_collection, MOST_LOVED_NAME, MOST_LOVED_IMAGE_FIELDS
        )
        return jsonify(serialize_showcase(most_loved, MOST_LOVED_IMAGE_FIELDS))

    @app.route("/api/settings/most-loved", methods=["POST"])
    @login_required
    def update_most_loved():
        pending_uploads = []
        for form_field, document_field, folder, _ in MOST_LOVED_UPLOADS:
            files = [
                image_file
                for image_file in request.files.getlist(form_field)
                if image_file and getattr(image_file, "filename", "")
            ]
            if files:
                pending_uploads.append((form_field, document_field, folder, files))

        if not pending_uploads:
            return jsonify({"message": "No images provided to update."}), 400

        existing = most_loved_collection.find_one({"name": MOST_LOVED_NAME}) or {}

        update_payload: Dict[str, object] = {}
        uploaded_so_far: List[Dict] = []
        keys_to_delete: List[str] = []
        for form_field, document_field, folder, files in pending_uploads:
            images, upload_error = upload_images(object_store, files, folder)
            if upload_error:
                discard_uploaded(object_store, uploaded_so_far)
                return jsonify({"message": upload_error}), 400
            attach_image_details(images, request.form.getlist(f"{form_field}AltText"))
            uploaded_so_far.extend(images)
            update_payload[document_field] = images
            keys_to_delete.extend(orphaned_keys(existing.get(document_field) or [], images))

        timestamp = datetime.utcnow()
        set_on_insert: Dict[str, object] = {"created_at": timestamp}
        for _, document_field, _, _ in MOST_LOVED_UPLOADS:
            if document_field not in update_payload:
                set_on_insert[document_field] = []

        try:
            updated = most_loved_collection.find_one_and_update(
                {"name": MOST_LOVED_NAME},
                {
                    "$set": {**update_payload, "updated_at": timestamp},
                    "$setOnInsert": set_on_insert,
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError:
            discard_uploaded(object_store, uploaded_so_far)
            raise

        janitor.discard(keys_to_delete, reason="most loved update")

        record_audit_log(
            current_email(),
            "Updated most loved section",
            {"fields": ", ".join(sorted(update_payload)), "removed_images": len(keys_to_delete)},
        )

        return jsonify(serialize_showcase(updated, MOST_LOVED_IMAGE_FIELDS)), 201

    @app.route("/api/settings/most-loved/<image_type>/<path:image_key>", methods=["DELETE"])
    @login_required
    def delete_most_loved_image(image_type: str, image_key: str):
        document_fields = {segment: field for _, field, _, segment in MOST_LOVED_UPLOADS}
        document_field = document_fields.get(image_type)
        if not document_field:
            return jsonify({"message": "Invalid image type"}), 400

        most_loved = most_loved_collection.find_one({"name": MOST_LOVED_NAME})
        if not most_loved:
            return jsonify({"message": "Most Loved section not found"}), 404

        images = most_loved.get(document_field) or []
        remaining = [image for image in images if image.get("key") != image_key]
        if len(remaining) == len(images):
            return jsonify({"message": "Image not found"}), 404

        most_loved_collection.update_one(
            {"_id": most_loved["_id"]},
            {"$set": {document_field: remaining, "updated_at": datetime.utcnow()}},
        )
        janitor.discard([image_key], reason=f"most loved {image_type} image delete")

        record_audit_log(
            current_email(),
            "Removed most loved image",
            {"type": image_type, "key": image_key},
        )

        updated = most_loved_collection.find_one({"_id": most_loved["_id"]})
        return jsonify(
            {
                "message": "Image deleted successfully",
                "mostLoved": serialize_showcase(updated, MOST_LOVED_IMAGE_FIELDS),
            }
        )

    # Instagram
    @app.route("/api/instagramPosts", methods=["GET"])
    @app.route("/api/instagramPosts/api/instagram-posts", methods=["GET"])
    def list_instagram_posts():
        token = str(app.config.get("INSTAGRAM_TOKEN") or "").strip()
        if not token:
            app.logger.error("Instagram token is not configured.")
            return jsonify({"message": "Error fetching Instagram posts"}), 500

        try:
            response = requests.get(
                app.config["INSTAGRAM_API_URL"],
                params={
                    "fields": INSTAGRAM_FIELDS,
                    "limit": app.config["INSTAGRAM_POST_LIMIT"],
                    "access_token": token,
                },
                timeout=app.config["INSTAGRAM_TIMEOUT_SECONDS"],
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            details = exc.response.text if exc.response is not None else str(exc)
            app.logger.error("Error fetching from Instagram: %s", details)
            return jsonify({"message": "Error fetching Instagram posts"}), 500
        except ValueError as exc:
            app.logger.error("Instagram returned an unreadable payload: %s", exc)
            return jsonify({"message": "Error fetching Instagram posts"}), 500

        posts = data.get("data", []) if isinstance(data, dict) else []
        app.logger.info("Fetched %d Instagram posts", len(posts))
        return jsonify(posts), 200

    return app
