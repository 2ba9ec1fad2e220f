import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from bson import ObjectId
from pymongo.errors import PyMongoError
from werkzeug.utils import secure_filename

from .assets import unique_preserve

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}

TSHIRT_FOLDER = "bforce_tshirts"
HERO_CAROUSEL_FOLDER = "bforce_hero_carousel"
MOST_LOVED_DESKTOP_FOLDER = "bforce_most_loved_desktop"
MOST_LOVED_MOBILE_FOLDER = "bforce_most_loved_mobile"


class ObjectStoreError(Exception):
    """Raised when the object store cannot complete an upload or delete."""


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


def build_object_key(folder: str, filename: str) -> str:
    extension = os.path.splitext(filename)[1].lower()
    return f"{folder}/{uuid4().hex}{extension}"


class ObjectStore:
    def upload(self, image_file, folder: str) -> Dict[str, str]:
        raise NotImplementedError

    def delete(self, key: Optional[str]) -> None:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Stores objects below a directory; the app serves them at ``/uploads``."""

    def __init__(self, root: str, public_url: str = "/uploads/"):
        self.root = os.path.abspath(root)
        self.public_url = public_url if public_url.endswith("/") else f"{public_url}/"
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, key: str) -> str:
        target = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, target]) != self.root:
            raise ObjectStoreError(f"Refusing to touch {key!r} outside the upload folder.")
        return target

    def upload(self, image_file, folder: str) -> Dict[str, str]:
        key = build_object_key(folder, image_file.filename)
        destination = self.path_for(key)
        try:
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            image_file.save(destination)
        except OSError as exc:
            raise ObjectStoreError(f"Could not store {key}: {exc}") from exc
        return {"key": key, "location": f"{self.public_url}{key}"}

    def delete(self, key: Optional[str]) -> None:
        if not key:
            return
        try:
            os.remove(self.path_for(str(key)))
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ObjectStoreError(f"Could not delete {key}: {exc}") from exc


class S3ObjectStore(ObjectStore):
    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def location_for(self, key: str) -> str:
        if self.region:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def upload(self, image_file, folder: str) -> Dict[str, str]:
        key = build_object_key(folder, image_file.filename)
        extra_args = {}
        if getattr(image_file, "mimetype", None):
            extra_args["ContentType"] = image_file.mimetype
        try:
            self.client.upload_fileobj(
                image_file.stream, self.bucket, key, ExtraArgs=extra_args or None
            )
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"Could not upload {key} to S3: {exc}") from exc
        return {"key": key, "location": self.location_for(key)}

    def delete(self, key: Optional[str]) -> None:
        if not key:
            return
        try:
            self.client.delete_object(Bucket=self.bucket, Key=str(key))
        except (BotoCoreError, ClientError) as exc:
            raise ObjectStoreError(f"Could not delete {key} from S3: {exc}") from exc


def build_object_store(config) -> ObjectStore:
    backend = str(config.get("STORAGE_BACKEND") or "").strip().lower()
    if not backend:
        backend = "s3" if config.get("AWS_S3_BUCKET_NAME") else "local"

    if backend == "s3":
        return S3ObjectStore(
            bucket=config["AWS_S3_BUCKET_NAME"],
            region=config.get("AWS_REGION"),
            access_key_id=config.get("AWS_ACCESS_KEY_ID"),
            secret_access_key=config.get("AWS_SECRET_ACCESS_KEY"),
        )
    return LocalObjectStore(config["UPLOAD_FOLDER"], config.get("UPLOAD_PUBLIC_URL") or "/uploads/")


def upload_images(store: ObjectStore, image_files, folder: str) -> Tuple[List[Dict], Optional[str]]:
    """Upload files in order; on any failure remove what this batch stored."""
    saved: List[Dict] = []
    if not image_files:
        return saved, None

    for image_file in image_files:
        if not image_file or not getattr(image_file, "filename", ""):
            continue

        error = None
        original_filename = secure_filename(image_file.filename)
        if not original_filename:
            error = "Please choose a valid file name."
        elif not allowed_image_extension(original_filename):
            error = "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
        else:
            try:
                saved.append(store.upload(image_file, folder))
                continue
            except ObjectStoreError as exc:
                logger.error("Image upload failed: %s", exc)
                error = "We could not store the uploaded image. Please try again."

        discard_uploaded(store, saved)
        return [], error

    return saved, None


def discard_uploaded(store: ObjectStore, images: Iterable[Dict]) -> None:
    for image in images:
        key = image.get("key")
        try:
            store.delete(key)
        except ObjectStoreError as exc:
            logger.warning("Could not remove uploaded object %s: %s", key, exc)


class AssetJanitor:
    """Deletes orphaned object keys through a MongoDB outbox.

    Each key is recorded in ``outbox`` before the delete is attempted and the
    record is removed once the object store confirms. Failed deletes stay in
    the outbox for :meth:`retry_pending`.
    """

    def __init__(self, store: ObjectStore, outbox, mode: str = "background", max_workers: int = 4):
        self.store = store
        self.outbox = outbox
        self.mode = mode
        self._executor = None
        if mode == "background":
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="asset-janitor"
            )

    def discard(self, keys: Iterable[str], reason: str = "") -> List[str]:
        scheduled = unique_preserve(str(key) for key in keys if key)
        if not scheduled:
            return []

        entries = []
        now = datetime.utcnow()
        for key in scheduled:
            entries.append(
                {
                    "_id": ObjectId(),
                    "key": key,
                    "reason": reason,
                    "created_at": now,
                    "attempts": 0,
                }
            )
        try:
            self.outbox.insert_many(entries)
        except PyMongoError as exc:
            logger.warning("Unable to record pending deletions for %s: %s", reason, exc)

        logger.info("Deleting %d orphaned image(s) (%s)", len(entries), reason)
        for entry in entries:
            if self._executor is not None:
                self._executor.submit(self._delete_entry, entry)
            else:
                self._delete_entry(entry)
        return scheduled

    def retry_pending(self, limit: int = 0) -> Tuple[int, int]:
        cursor = self.outbox.find().sort("created_at", 1)
        if limit:
            cursor = cursor.limit(limit)

        deleted = failed = 0
        for entry in list(cursor):
            if self._delete_entry(entry):
                deleted += 1
            else:
                failed += 1
        return deleted, failed

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _delete_entry(self, entry: Dict) -> bool:
        key = entry.get("key")
        try:
            self.store.delete(key)
        except Exception as exc:
            logger.warning("Error deleting %s from the object store: %s", key, exc)
            self._record_failure(entry, exc)
            return False

        logger.info("Deleted %s from the object store.", key)
        if entry.get("_id") is not None:
            try:
                self.outbox.delete_one({"_id": entry["_id"]})
            except PyMongoError as exc:
                logger.warning("Unable to clear pending deletion for %s: %s", key, exc)
        return True

    def _record_failure(self, entry: Dict, exc: Exception) -> None:
        if entry.get("_id") is None:
            return
        try:
            self.outbox.update_one(
                {"_id": entry["_id"]},
                {
                    "$inc": {"attempts": 1},
                    "$set": {
                        "last_error": str(exc),
                        "last_attempt_at": datetime.utcnow(),
                    },
                },
            )
        except PyMongoError as record_exc:
            logger.warning("Unable to record failed deletion for %s: %s", entry.get("key"), record_exc)
