import json

import mongomock
from bson import ObjectId

from conftest import image_file, tshirt_form


def create_tshirt(client, **overrides):
    form = tshirt_form(**overrides)
    response = client.post("/api/tshirts", data=form, content_type="multipart/form-data")
    assert response.status_code == 201, response.get_json()
    return response.get_json()["tshirt"]


def variants_payload(tshirt, keep=None):
    """Resend a t-shirt's variants the way the admin UI does, without images."""
    variants = tshirt["variants"] if keep is None else [tshirt["variants"][i] for i in keep]
    return json.dumps(
        [
            {"id": v["id"], "colorName": v["color_name"], "colorHex": v["color_hex"], "stock": v["stock"]}
            for v in variants
        ]
    )


def image_keys(tshirt, index):
    return [image["key"] for image in tshirt["variants"][index]["images"]]


def test_create_attaches_uploads_to_variant_index(auth_client, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=[image_file("front.png"), image_file("back.png")],
        variant_images_1=image_file("black.jpg"),
    )

    assert tshirt["name"] == "Classic Tee"
    assert tshirt["price"] == 24.99
    assert tshirt["category"] == {"main": "T-Shirts", "sub": "Plain T-Shirts"}
    assert tshirt["version"] == 1
    assert len(image_keys(tshirt, 0)) == 2
    assert len(image_keys(tshirt, 1)) == 1
    assert all(key.startswith("bforce_tshirts/") for key in image_keys(tshirt, 0))
    assert all(store.exists(key) for key in image_keys(tshirt, 0) + image_keys(tshirt, 1))
    assert tshirt["variants"][0]["stock"] == [{"size": "M", "quantity_in_stock": 4}]
    assert tshirt["variants"][0]["id"] != tshirt["variants"][1]["id"]


def test_create_without_images(auth_client):
    tshirt = create_tshirt(auth_client)

    assert tshirt["variants"][0]["images"] == []
    assert tshirt["variants"][1]["images"] == []


def test_create_validation_errors(auth_client, store):
    response = auth_client.post(
        "/api/tshirts", data=tshirt_form(price="-3"), content_type="multipart/form-data"
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Price cannot be negative."

    response = auth_client.post(
        "/api/tshirts",
        data=tshirt_form(variants=json.dumps([{"colorName": "Red", "stock": [{"size": "XXXL"}]}])),
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert store.uploaded == []


def test_create_rejects_uploads_without_matching_variant(auth_client, db, store):
    response = auth_client.post(
        "/api/tshirts",
        data=tshirt_form(variant_images_5=image_file()),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert "variant_images_5" in response.get_json()["message"]
    assert store.uploaded == []
    assert db.tshirts.count_documents({}) == 0


def test_create_rejects_duplicate_sku(auth_client, store):
    create_tshirt(auth_client)

    response = auth_client.post(
        "/api/tshirts",
        data=tshirt_form(variant_images_0=image_file()),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "A t-shirt with this SKU already exists."
    assert store.uploaded == []


def test_failed_upload_leaves_nothing_behind(auth_client, db, store):
    store.fail_uploads_after = 1

    response = auth_client.post(
        "/api/tshirts",
        data=tshirt_form(variant_images_0=[image_file("a.png"), image_file("b.png")]),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert db.tshirts.count_documents({}) == 0
    assert store.deleted == store.uploaded
    assert not store.exists(store.uploaded[0])


def test_list_filters_by_search_and_collection(auth_client, client):
    create_tshirt(auth_client)
    create_tshirt(
        auth_client,
        name="Summer Drop",
        sku="BF-TEE-002",
        description="Linen (limited)",
        collectionType="seasonCollection",
    )

    everything = client.get("/api/tshirts").get_json()
    assert everything["count"] == 2
    assert everything["tshirts"][0]["name"] == "Summer Drop"

    searched = client.get("/api/tshirts", query_string={"search": "linen ("}).get_json()
    assert [item["sku"] for item in searched["tshirts"]] == ["BF-TEE-002"]

    basics = client.get("/api/tshirts", query_string={"collection": "Basic"}).get_json()
    assert [item["sku"] for item in basics["tshirts"]] == ["BF-TEE-001"]


def test_get_single_tshirt(auth_client, client):
    tshirt = create_tshirt(auth_client)

    response = client.get(f"/api/tshirts/{tshirt['id']}")
    assert response.status_code == 200
    assert response.get_json()["tshirt"]["sku"] == "BF-TEE-001"

    assert client.get("/api/tshirts/not-an-id").status_code == 400
    assert client.get(f"/api/tshirts/{ObjectId()}").status_code == 404


def test_update_replaces_uploaded_variant_and_keeps_others(auth_client, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=[image_file("a.png"), image_file("b.png")],
        variant_images_1=image_file("c.png"),
    )
    old_front = image_keys(tshirt, 0)
    kept = image_keys(tshirt, 1)

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={
            "name": "Classic Tee v2",
            "variants": variants_payload(tshirt),
            "variant_images_0": image_file("new.png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    updated = response.get_json()["tshirt"]
    assert updated["name"] == "Classic Tee v2"
    assert updated["version"] == 2
    assert len(image_keys(updated, 0)) == 1
    assert image_keys(updated, 0)[0] not in old_front
    assert image_keys(updated, 1) == kept
    assert sorted(store.deleted) == sorted(old_front)
    assert store.exists(kept[0])
    assert updated["variants"][0]["id"] == tshirt["variants"][0]["id"]


def test_update_without_files_keeps_every_image(auth_client, store):
    tshirt = create_tshirt(auth_client, variant_images_0=image_file())

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"price": "30", "variants": variants_payload(tshirt)},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    updated = response.get_json()["tshirt"]
    assert updated["price"] == 30.0
    assert image_keys(updated, 0) == image_keys(tshirt, 0)
    assert store.deleted == []


def test_update_without_variants_field_keeps_variants(auth_client, store):
    tshirt = create_tshirt(auth_client, variant_images_1=image_file())

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        json={"description": "Now in organic cotton"},
    )

    assert response.status_code == 200
    updated = response.get_json()["tshirt"]
    assert updated["description"] == "Now in organic cotton"
    assert updated["variants"] == tshirt["variants"]
    assert store.deleted == []


def test_update_dropping_a_variant_deletes_its_images(auth_client, db, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=image_file("a.png"),
        variant_images_1=image_file("d.png"),
    )
    dropped = image_keys(tshirt, 1)

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"variants": variants_payload(tshirt, keep=[0])},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    updated = response.get_json()["tshirt"]
    assert len(updated["variants"]) == 1
    assert image_keys(updated, 0) == image_keys(tshirt, 0)
    assert store.deleted == dropped
    assert db.pending_asset_deletions.count_documents({}) == 0


def test_update_follows_variant_ids_when_reordered(auth_client, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=image_file("a.png"),
        variant_images_1=image_file("b.png"),
    )

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"variants": variants_payload(tshirt, keep=[1, 0])},
        content_type="multipart/form-data",
    )

    updated = response.get_json()["tshirt"]
    assert updated["variants"][0]["color_name"] == "Black"
    assert image_keys(updated, 0) == image_keys(tshirt, 1)
    assert image_keys(updated, 1) == image_keys(tshirt, 0)
    assert store.deleted == []


def test_update_with_stale_version_conflicts(auth_client, db, store):
    tshirt = create_tshirt(auth_client, variant_images_0=image_file("a.png"))
    auth_client.put(f"/api/tshirts/{tshirt['id']}", json={"price": 26})

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={
            "version": "1",
            "name": "Lost update",
            "variants": variants_payload(tshirt),
            "variant_images_0": image_file("b.png"),
        },
        content_type="multipart/form-data",
    )

    assert response.status_code == 409
    assert response.get_json()["version"] == 2
    stored = db.tshirts.find_one({"_id": ObjectId(tshirt["id"])})
    assert stored["name"] == "Classic Tee"
    assert [image["key"] for image in stored["variants"][0]["images"]] == image_keys(tshirt, 0)
    new_key = store.uploaded[-1]
    assert store.deleted == [new_key]
    assert store.exists(image_keys(tshirt, 0)[0])


def test_update_with_current_version(auth_client):
    tshirt = create_tshirt(auth_client)

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}", json={"version": 1, "material": "Linen"}
    )

    assert response.status_code == 200
    assert response.get_json()["tshirt"]["version"] == 2


def test_update_rejects_sku_of_another_tshirt(auth_client):
    create_tshirt(auth_client)
    other = create_tshirt(auth_client, sku="BF-TEE-002")

    response = auth_client.put(f"/api/tshirts/{other['id']}", json={"sku": "BF-TEE-001"})

    assert response.status_code == 400


def test_update_missing_tshirt(auth_client):
    assert auth_client.put(f"/api/tshirts/{ObjectId()}", json={"price": 3}).status_code == 404


def test_failed_orphan_delete_does_not_fail_update(app, auth_client, db, store):
    tshirt = create_tshirt(auth_client, variant_images_0=image_file("a.png"))
    old_key = image_keys(tshirt, 0)[0]
    store.fail_deletes = {old_key}

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"variants": variants_payload(tshirt), "variant_images_0": image_file("b.png")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    pending = list(db.pending_asset_deletions.find())
    assert [entry["key"] for entry in pending] == [old_key]

    store.fail_deletes = set()
    result = app.test_cli_runner().invoke(args=["purge-assets"])
    assert "Deleted 1 pending object(s); 0 still pending." in result.output
    assert db.pending_asset_deletions.count_documents({}) == 0
    assert not store.exists(old_key)


def test_delete_removes_every_image_once(auth_client, client, db, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=[image_file("a.png"), image_file("b.png")],
        variant_images_1=image_file("c.png"),
    )
    all_keys = image_keys(tshirt, 0) + image_keys(tshirt, 1)

    response = auth_client.delete(f"/api/tshirts/{tshirt['id']}")

    assert response.status_code == 200
    assert response.get_json()["deleted_images"] == 3
    assert sorted(store.deleted) == sorted(all_keys)
    assert db.tshirts.count_documents({}) == 0
    assert client.get(f"/api/tshirts/{tshirt['id']}").status_code == 404
    assert db.audit_logs.count_documents({"action": "Deleted t-shirt"}) == 1


def test_delete_missing_tshirt(auth_client):
    assert auth_client.delete(f"/api/tshirts/{ObjectId()}").status_code == 404


def test_update_with_blank_variants_changes_nothing(auth_client, db, store):
    tshirt = create_tshirt(
        auth_client,
        variant_images_0=image_file("a.png"),
        variant_images_1=image_file("b.png"),
    )

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"name": "Renamed", "variants": ""},
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "We could not understand the variants field."
    stored = db.tshirts.find_one({"_id": ObjectId(tshirt["id"])})
    assert stored["name"] == "Classic Tee"
    assert len(stored["variants"]) == 2
    assert store.deleted == []


def test_create_rejects_non_ascii_digit_field_index(auth_client, store):
    response = auth_client.post(
        "/api/tshirts",
        data=tshirt_form(**{"variant_images_²": image_file()}),
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert "variant_images_²" in response.get_json()["message"]
    assert store.uploaded == []


def test_versioned_update_of_concurrently_deleted_tshirt(auth_client, db, store, monkeypatch):
    tshirt = create_tshirt(auth_client)
    original_update = mongomock.collection.Collection.find_one_and_update

    def delete_then_update(collection, *args, **kwargs):
        collection.delete_one({"_id": ObjectId(tshirt["id"])})
        return original_update(collection, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, "find_one_and_update", delete_then_update)

    response = auth_client.put(
        f"/api/tshirts/{tshirt['id']}",
        data={"version": "1", "variants": variants_payload(tshirt), "variant_images_0": image_file()},
        content_type="multipart/form-data",
    )

    assert response.status_code == 404
    assert response.get_json()["message"] == "T-shirt not found"
    assert store.deleted == store.uploaded
