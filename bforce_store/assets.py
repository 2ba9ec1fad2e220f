"""Image bookkeeping for catalog variants and showcase documents.

Everything here is pure: the functions decide which images a document keeps
and which object-store keys became unreferenced. Deleting those keys is left
to :class:`bforce_store.storage.AssetJanitor`.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

VARIANT_INDEX_POSITION = 2


def parse_variant_index(field_name: Optional[str]) -> Optional[int]:
    """Return the variant index encoded in ``<prefix>_<field>_<index>``."""
    parts = str(field_name or "").split("_")
    if len(parts) <= VARIANT_INDEX_POSITION:
        return None
    candidate = parts[VARIANT_INDEX_POSITION].strip()
    if not candidate.isdecimal():
        return None
    return int(candidate)


def group_uploads_by_variant_index(
    uploads: Iterable[Tuple[str, Dict]]
) -> Dict[int, List[Dict]]:
    grouped: Dict[int, List[Dict]] = {}
    for field_name, image in uploads:
        index = parse_variant_index(field_name)
        if index is None:
            continue
        grouped.setdefault(index, []).append(
            {"key": image.get("key"), "location": image.get("location")}
        )
    return grouped


def collect_keys(images: Optional[Iterable[Dict]]) -> List[str]:
    keys: List[str] = []
    for image in images or []:
        if not isinstance(image, dict):
            continue
        key = image.get("key")
        if key:
            keys.append(str(key))
    return keys


def collect_image_keys(variants: Optional[Iterable[Dict]]) -> List[str]:
    keys: List[str] = []
    for variant in variants or []:
        if isinstance(variant, dict):
            keys.extend(collect_keys(variant.get("images")))
    return keys


def unique_preserve(items: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for item in items:
        if not item or item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def orphaned_keys(old_images: Iterable[Dict], new_images: Iterable[Dict]) -> List[str]:
    retained = set(collect_keys(new_images))
    return [key for key in unique_preserve(collect_keys(old_images)) if key not in retained]


def _match_previous_variant(
    descriptor: Dict,
    index: int,
    old_variants: Sequence[Dict],
    old_by_id: Dict[str, Dict],
    claimed_ids: set,
) -> Optional[Dict]:
    variant_id = str(descriptor.get("id") or "").strip()
    if variant_id and variant_id in old_by_id:
        return old_by_id[variant_id]
    if index < len(old_variants):
        positional = old_variants[index]
        # A variant referenced by id elsewhere in the request is not reused here.
        if str(positional.get("id") or "") not in claimed_ids:
            return positional
    return None


def reconcile_variants(
    old_variants: Optional[Sequence[Dict]],
    incoming_variants: Sequence[Dict],
    uploads_by_index: Optional[Dict[int, List[Dict]]],
) -> Tuple[List[Dict], List[str]]:
    """Merge incoming variant descriptors with their images.

    A variant with uploads at its index has its images replaced by them. Any
    other variant keeps the images of the persisted variant it matches: the one
    sharing its ``id`` when the descriptor carries a known id, otherwise the one
    at the same position. Unmatched variants without uploads get no images.

    Returns the final variants and the keys that only the old variants
    referenced, each reported once in their original order.
    """
    old_variants = [variant for variant in (old_variants or []) if isinstance(variant, dict)]
    uploads_by_index = uploads_by_index or {}
    old_by_id = {
        str(variant["id"]): variant for variant in old_variants if variant.get("id")
    }
    claimed_ids = {
        str(descriptor.get("id"))
        for descriptor in incoming_variants
        if str(descriptor.get("id") or "") in old_by_id
    }

    final_variants: List[Dict] = []
    for index, descriptor in enumerate(incoming_variants):
        merged = {key: value for key, value in descriptor.items() if key != "images"}
        previous = _match_previous_variant(
            descriptor, index, old_variants, old_by_id, claimed_ids
        )

        uploaded = uploads_by_index.get(index) or []
        if uploaded:
            merged["images"] = [dict(image) for image in uploaded]
        elif previous is not None:
            merged["images"] = [dict(image) for image in previous.get("images") or []]
        else:
            merged["images"] = []

        if not merged.get("id") and previous is not None and previous.get("id"):
            merged["id"] = previous["id"]
        final_variants.append(merged)

    old_keys = unique_preserve(collect_image_keys(old_variants))
    new_keys = set(collect_image_keys(final_variants))
    return final_variants, [key for key in old_keys if key not in new_keys]


def assign_variant_ids(variants: List[Dict]) -> List[Dict]:
    seen = set()
    for variant in variants:
        variant_id = str(variant.get("id") or "").strip()
        if not variant_id or variant_id in seen:
            variant_id = uuid4().hex
        variant["id"] = variant_id
        seen.add(variant_id)
    return variants
