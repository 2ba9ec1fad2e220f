import json
import math
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId

SIZES = ("XS", "S", "M", "L", "XL", "XXL")
COLLECTION_TYPES = ("mostLoved", "seasonCollection", "Basic")
DEFAULT_COLLECTION_TYPE = "Basic"
MAX_VARIANTS = 25
MAX_RATING = 5

COLOR_HEX_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")

TSHIRT_FIELD_ALIASES = {
    "name": ("name",),
    "sku": ("sku",),
    "price": ("price",),
    "description": ("description",),
    "material": ("material",),
    "category": ("category",),
    "collection_type": ("collection_type", "collectionType"),
    "average_rating": ("average_rating", "averageRating"),
    "num_reviews": ("num_reviews", "numReviews"),
    "similar_products": ("similar_products", "similarProducts"),
    "variants": ("variants",),
}
VARIANT_FIELD_ALIASES = {
    "id": ("id", "_id", "variant_id", "variantId"),
    "color_name": ("color_name", "colorName"),
    "color_hex": ("color_hex", "colorHex"),
    "stock": ("stock",),
}
STOCK_FIELD_ALIASES = {
    "size": ("size",),
    "quantity_in_stock": ("quantity_in_stock", "quantityInStock", "quantity"),
}


def pick_field(payload: Optional[Dict], aliases) -> Tuple[bool, object]:
    if not isinstance(payload, dict):
        return False, None
    for alias in aliases:
        if alias in payload:
            return True, payload.get(alias)
    return False, None


def parse_json_field(value, label: str):
    """Decode a JSON-encoded multipart field; native values pass through."""
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            return None, f"We could not understand the {label} field."
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None, None
        try:
            return json.loads(candidate), None
        except (json.JSONDecodeError, ValueError):
            return None, f"We could not understand the {label} field."
    return value, None


def clean_text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_price(value) -> Tuple[Optional[float], Optional[str]]:
    try:
        price_value = round(float(value), 2)
    except (TypeError, ValueError):
        return None, "Price must be a valid number."
    if not math.isfinite(price_value):
        return None, "Price must be a valid number."
    if price_value < 0:
        return None, "Price cannot be negative."
    return price_value, None


def normalize_category(value) -> Tuple[Optional[Dict], Optional[str]]:
    parsed, error = parse_json_field(value, "category")
    if error:
        return None, error
    if isinstance(parsed, str):
        parsed = {"main": parsed}
    if not isinstance(parsed, dict):
        return None, "A main category is required."

    main = clean_text(parsed.get("main"))
    if not main:
        return None, "A main category is required."
    category = {"main": main}
    sub = clean_text(parsed.get("sub"))
    if sub:
        category["sub"] = sub
    return category, None


def normalize_stock_levels(raw_stock) -> Tuple[Optional[List[Dict]], Optional[str]]:
    if raw_stock is None:
        return [], None
    if not isinstance(raw_stock, list):
        return None, "Variant stock must be a list of sizes."

    levels: List[Dict] = []
    seen_sizes = set()
    for entry in raw_stock:
        if not isinstance(entry, dict):
            return None, "Each stock entry needs a size."
        _, raw_size = pick_field(entry, STOCK_FIELD_ALIASES["size"])
        size = clean_text(raw_size).upper()
        if size not in SIZES:
            return None, f"Size must be one of {', '.join(SIZES)}."
        if size in seen_sizes:
            return None, f"Size {size} is listed more than once."
        seen_sizes.add(size)

        present, raw_quantity = pick_field(entry, STOCK_FIELD_ALIASES["quantity_in_stock"])
        quantity = 0
        if present and raw_quantity not in (None, ""):
            try:
                quantity = int(raw_quantity)
            except (TypeError, ValueError):
                return None, "Stock quantities must be whole numbers."
            if quantity < 0:
                return None, "Stock quantities cannot be negative."
        levels.append({"size": size, "quantity_in_stock": quantity})
    return levels, None


def normalize_variant_descriptors(raw_value) -> Tuple[Optional[List[Dict]], Optional[str]]:
    """Validate the ``variants`` field into image-less variant descriptors."""
    parsed, error = parse_json_field(raw_value, "variants")
    if error:
        return None, error
    if parsed is None:
        return [], None
    if not isinstance(parsed, list):
        return None, "Variants must be a list."
    if len(parsed) > MAX_VARIANTS:
        return None, f"You can specify up to {MAX_VARIANTS} variants per product."

    descriptors: List[Dict] = []
    seen_ids = set()
    for entry in parsed:
        if not isinstance(entry, dict):
            return None, "Each variant must be an object."

        _, raw_name = pick_field(entry, VARIANT_FIELD_ALIASES["color_name"])
        color_name = clean_text(raw_name)
        if not color_name:
            return None, "Every variant needs a color name."

        descriptor: Dict = {"color_name": color_name}

        _, raw_id = pick_field(entry, VARIANT_FIELD_ALIASES["id"])
        variant_id = clean_text(raw_id)
        if variant_id and variant_id not in seen_ids:
            seen_ids.add(variant_id)
            descriptor["id"] = variant_id

        _, raw_hex = pick_field(entry, VARIANT_FIELD_ALIASES["color_hex"])
        color_hex = clean_text(raw_hex)
        if color_hex:
            if not COLOR_HEX_PATTERN.match(color_hex):
                return None, f"{color_hex} is not a valid color hex value."
            descriptor["color_hex"] = color_hex

        _, raw_stock = pick_field(entry, VARIANT_FIELD_ALIASES["stock"])
        stock, stock_error = normalize_stock_levels(raw_stock)
        if stock_error:
            return None, stock_error
        descriptor["stock"] = stock

        descriptors.append(descriptor)
    return descriptors, None


def normalize_object_id_list(raw_value) -> Tuple[Optional[List[ObjectId]], Optional[str]]:
    parsed, error = parse_json_field(raw_value, "similar products")
    if error:
        return None, error
    if parsed is None:
        return [], None
    if not isinstance(parsed, list):
        parsed = [parsed]

    normalized: List[ObjectId] = []
    for value in parsed:
        try:
            object_id = value if isinstance(value, ObjectId) else ObjectId(str(value))
        except (InvalidId, TypeError):
            return None, f"{value} is not a valid product identifier."
        if object_id not in normalized:
            normalized.append(object_id)
    return normalized, None


def normalize_tshirt_payload(payload: Dict, partial: bool = False) -> Tuple[Optional[Dict], Optional[str]]:
    """Validate submitted t-shirt fields.

    With ``partial`` only the fields present in ``payload`` are checked and
    returned, otherwise required fields must be present and defaults are
    filled in. Variants come back as descriptors without images.
    """
    fields: Dict = {}

    def present(field):
        return pick_field(payload, TSHIRT_FIELD_ALIASES[field])

    for field, label in (("name", "A product name"), ("sku", "A unique SKU")):
        is_present, value = present(field)
        if is_present or not partial:
            text = clean_text(value)
            if not text:
                return None, f"{label} is required."
            fields[field] = text

    is_present, value = present("price")
    if is_present or not partial:
        if value in (None, ""):
            return None, "Price is required."
        price_value, price_error = normalize_price(value)
        if price_error:
            return None, price_error
        fields["price"] = price_value

    for field in ("description", "material"):
        is_present, value = present(field)
        if is_present or not partial:
            fields[field] = clean_text(value)

    is_present, value = present("category")
    if is_present or not partial:
        category, category_error = normalize_category(value)
        if category_error:
            return None, category_error
        fields["category"] = category

    is_present, value = present("collection_type")
    if is_present or not partial:
        collection_type = clean_text(value) or DEFAULT_COLLECTION_TYPE
        if collection_type not in COLLECTION_TYPES:
            return None, f"Collection must be one of {', '.join(COLLECTION_TYPES)}."
        fields["collection_type"] = collection_type

    is_present, value = present("average_rating")
    if is_present or not partial:
        rating = 0.0
        if value not in (None, ""):
            try:
                rating = float(value)
            except (TypeError, ValueError):
                return None, "Average rating must be a number."
            if not math.isfinite(rating) or rating < 0 or rating > MAX_RATING:
                return None, f"Average rating must be between 0 and {MAX_RATING}."
        fields["average_rating"] = rating

    is_present, value = present("num_reviews")
    if is_present or not partial:
        reviews = 0
        if value not in (None, ""):
            try:
                reviews = int(value)
            except (TypeError, ValueError):
                return None, "Review count must be a whole number."
            if reviews < 0:
                return None, "Review count cannot be negative."
        fields["num_reviews"] = reviews

    is_present, value = present("similar_products")
    if is_present or not partial:
        similar, similar_error = normalize_object_id_list(value)
        if similar_error:
            return None, similar_error
        fields["similar_products"] = similar

    is_present, value = present("variants")
    if is_present or not partial:
        # an update only clears variants on an explicit empty list
        if partial and (value is None or not clean_text(value)):
            return None, "We could not understand the variants field."
        variants, variants_error = normalize_variant_descriptors(value)
        if variants_error:
            return None, variants_error
        fields["variants"] = variants

    return fields, None


def strip_images(variants) -> List[Dict]:
    return [
        {key: value for key, value in variant.items() if key != "images"}
        for variant in variants or []
        if isinstance(variant, dict)
    ]


def isoformat_or_none(value):
    return value.isoformat() if isinstance(value, datetime) else None


def serialize_image(image: Dict) -> Dict[str, str]:
    serialized = {
        "key": image.get("key", "") or "",
        "location": image.get("location", "") or "",
    }
    for optional in ("alt_text", "link"):
        if image.get(optional):
            serialized[optional] = image[optional]
    return serialized


def serialize_variant(variant: Dict) -> Dict:
    return {
        "id": variant.get("id", "") or "",
        "color_name": variant.get("color_name", "") or "",
        "color_hex": variant.get("color_hex"),
        "images": [serialize_image(image) for image in variant.get("images") or []],
        "stock": [
            {
                "size": level.get("size"),
                "quantity_in_stock": int(level.get("quantity_in_stock", 0) or 0),
            }
            for level in variant.get("stock") or []
        ],
    }


def serialize_tshirt(document: Optional[Dict]) -> Dict:
    if not document:
        return {}

    try:
        price_value = float(document.get("price", 0) or 0)
    except (TypeError, ValueError):
        price_value = 0.0

    return {
        "id": str(document.get("_id")),
        "name": document.get("name", ""),
        "sku": document.get("sku", ""),
        "price": price_value,
        "description": document.get("description", "") or "",
        "material": document.get("material", "") or "",
        "category": document.get("category") or {},
        "collection_type": document.get("collection_type") or DEFAULT_COLLECTION_TYPE,
        "average_rating": document.get("average_rating", 0) or 0,
        "num_reviews": document.get("num_reviews", 0) or 0,
        "variants": [serialize_variant(variant) for variant in document.get("variants") or []],
        "similar_products": [str(value) for value in document.get("similar_products") or []],
        "version": document.get("version", 1),
        "created_at": isoformat_or_none(document.get("created_at")),
        "updated_at": isoformat_or_none(document.get("updated_at")),
    }


def serialize_showcase(document: Optional[Dict], image_fields) -> Dict:
    if not document:
        return {}

    serialized = {
        "id": str(document.get("_id")),
        "name": document.get("name", ""),
        "created_at": isoformat_or_none(document.get("created_at")),
        "updated_at": isoformat_or_none(document.get("updated_at")),
    }
    for field in image_fields:
        serialized[field] = [serialize_image(image) for image in document.get(field) or []]
    return serialized
