import os
from types import SimpleNamespace

import pytest

from kickstreet import catalog
from kickstreet.catalog import ANNOUNCEMENT_BATCH_SIZE, MAX_SLIDERS, slugify_product_name
from kickstreet.errors import LimitExceeded

NEW_PRODUCT = {
    "name": "Nike Air Max 270!!",
    "description": "Big air, all day.",
    "price": 12999,
    "category": "Men",
    "sizes": ["8", "9", "10"],
    "colors": "Black, White",
    "stock": 12,
    "images": ["https://cdn.example.com/airmax.png"],
}


@pytest.mark.parametrize(
    "name, slug",
    [
        ("Nike Air Max 270!!", "nike-air-max-270"),
        ("  --Jordan  1 Retro--  ", "jordan-1-retro"),
        ("Crème Brûlée Low", "creme-brulee-low"),
    ],
)
def test_slugify_product_name(name, slug):
    assert slugify_product_name(name) == slug


def test_admin_creates_product_with_slug(client, db, admin_headers):
    response = client.post("/api/admin/products", json=NEW_PRODUCT, headers=admin_headers)

    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["slug"] == "nike-air-max-270"
    assert product["brand"] == "KickStreet"
    assert product["colors"] == ["Black", "White"]
    assert db.products.count_documents({}) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"images": []},
        {"price": -1},
        {"category": "Pets"},
        {"stock": 2.5},
        {"name": ""},
    ],
)
def test_admin_create_product_validation(client, db, admin_headers, overrides):
    response = client.post(
        "/api/admin/products", json={**NEW_PRODUCT, **overrides}, headers=admin_headers
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
    assert db.products.count_documents({}) == 0


def test_admin_create_product_duplicate_name(client, admin_headers, make_product):
    make_product(name="Nike Air Max 270!!")

    response = client.post("/api/admin/products", json=NEW_PRODUCT, headers=admin_headers)

    assert response.status_code == 400
    assert response.get_json()["error"] == "conflict"


def test_new_product_is_announced_to_subscribers(client, db, admin_headers, outbox):
    db.newsletter.insert_one({"email": "fan@example.com", "is_active": True})
    db.newsletter.insert_one({"email": "gone@example.com", "is_active": False})

    client.post("/api/admin/products", json=NEW_PRODUCT, headers=admin_headers)

    assert len(outbox) == 1
    assert outbox[0]["bcc"] == ["fan@example.com"]
    assert "Nike Air Max 270!!" in outbox[0]["subject"]


def test_announcement_is_sent_in_batches(client, db, admin_headers, outbox):
    db.newsletter.insert_many(
        [{"email": f"fan{number}@example.com", "is_active": True} for number in range(120)]
    )

    client.post("/api/admin/products", json=NEW_PRODUCT, headers=admin_headers)

    assert [len(payload["bcc"]) for payload in outbox] == [
        ANNOUNCEMENT_BATCH_SIZE,
        ANNOUNCEMENT_BATCH_SIZE,
        120 - 2 * ANNOUNCEMENT_BATCH_SIZE,
    ]
    recipients = [email for payload in outbox for email in payload["bcc"]]
    assert len(set(recipients)) == 120


def test_update_recomputes_slug(client, admin_headers, make_product):
    product = make_product(name="Old Name")

    response = client.put(
        f"/api/admin/products/{product['_id']}",
        json={"name": "Air Force 1 '07", "price": 7999},
        headers=admin_headers,
    )

    assert response.status_code == 200
    body = response.get_json()["product"]
    assert body["slug"] == "air-force-1-07"
    assert body["price"] == 7999
    assert body["description"] == product["description"]


def test_update_unknown_product(client, admin_headers):
    response = client.put(
        "/api/admin/products/64b7f0000000000000000000", json={"price": 1}, headers=admin_headers
    )

    assert response.status_code == 404


def test_delete_product_removes_hosted_images(app, client, db, admin_headers, make_product):
    image_dir = os.path.join(app.config["UPLOAD_FOLDER"], "products")
    os.makedirs(image_dir, exist_ok=True)
    image_path = os.path.join(image_dir, "shoe.png")
    with open(image_path, "wb") as handle:
        handle.write(b"png")
    product = make_product(
        images=["http://testserver/uploads/products/shoe.png", "https://elsewhere.example/x.png"]
    )

    response = client.delete(f"/api/admin/products/{product['_id']}", headers=admin_headers)

    assert response.status_code == 200
    assert not os.path.exists(image_path)
    assert db.products.count_documents({}) == 0


def test_delete_product_survives_missing_image(client, db, admin_headers, make_product):
    product = make_product(images=["http://testserver/uploads/products/missing.png"])

    response = client.delete(f"/api/admin/products/{product['_id']}", headers=admin_headers)

    assert response.status_code == 200
    assert db.products.count_documents({}) == 0


def test_upload_data_url(app, client, admin_headers):
    response = client.post(
        "/api/admin/upload",
        json={"image": "data:image/png;base64,iVBORw0KGgo=", "folder": "sliders"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    url = response.get_json()["url"]
    assert url.startswith("http://testserver/uploads/sliders/")
    stored = os.path.join(app.config["UPLOAD_FOLDER"], "sliders", url.rsplit("/", 1)[-1])
    assert os.path.exists(stored)


def test_upload_rejects_unsupported_format(client, admin_headers):
    response = client.post(
        "/api/admin/upload",
        json={"image": "data:image/svg+xml;base64,PHN2Zz4="},
        headers=admin_headers,
    )

    assert response.status_code == 400


def test_storefront_listing_filters_and_sorts(client, make_product):
    make_product(name="Cheap Kid", price=999, category="Children")
    make_product(name="Mid Man", price=4999)
    make_product(name="Pricey Man", price=15999)

    response = client.get("/api/products?category=Men&sort=price_desc")

    body = response.get_json()
    assert [product["name"] for product in body["products"]] == ["Pricey Man", "Mid Man"]
    assert body["pagination"]["total"] == 2

    search = client.get("/api/products?search=kid").get_json()
    assert [product["name"] for product in search["products"]] == ["Cheap Kid"]


def test_product_detail_by_slug_or_id(client, make_product):
    product = make_product(name="Samba OG")

    assert client.get("/api/products/samba-og").get_json()["product"]["id"] == str(product["_id"])
    assert client.get(f"/api/products/{product['_id']}").status_code == 200
    assert client.get("/api/products/unknown-shoe").status_code == 404


def create_slider(client, headers, number):
    return client.post(
        "/api/admin/sliders",
        json={"image": f"https://cdn.example.com/slide-{number}.png", "title": f"Slide {number}"},
        headers=headers,
    )


def test_slider_cap(client, db, admin_headers):
    for number in range(MAX_SLIDERS):
        assert create_slider(client, admin_headers, number).status_code == 201

    response = create_slider(client, admin_headers, 99)

    assert response.status_code == 400
    assert response.get_json()["message"] == "Maximum 3 sliders allowed. Delete one first."
    assert db.sliders.count_documents({}) == MAX_SLIDERS


def test_slider_claim_moves_past_a_slot_taken_concurrently(app, db):
    # Another writer claims slot 0 after this request has read the taken slots.
    db.sliders.insert_one({"slot": 0, "image": "https://cdn.example.com/early.png", "title": "Early"})
    stale_sliders = SimpleNamespace(
        find=lambda *args, **kwargs: [], insert_one=db.sliders.insert_one
    )
    stale_db = SimpleNamespace(sliders=stale_sliders)
    payload = {"image": "https://cdn.example.com/late.png", "title": "Late"}

    assert catalog.create_slider(stale_db, payload)["slot"] == 1
    assert catalog.create_slider(stale_db, payload)["slot"] == 2
    with pytest.raises(LimitExceeded):
        catalog.create_slider(stale_db, payload)
    assert db.sliders.count_documents({}) == MAX_SLIDERS


def test_slider_slot_is_reused_after_delete(client, db, admin_headers):
    created = [create_slider(client, admin_headers, n).get_json()["slider"] for n in range(3)]

    client.delete(f"/api/admin/sliders/{created[1]['id']}", headers=admin_headers)

    assert create_slider(client, admin_headers, 7).status_code == 201
    assert sorted(doc["slot"] for doc in db.sliders.find()) == [0, 1, 2]


def test_storefront_sliders_are_synthesized_without_persisting(client, db, make_product):
    for number in range(4):
        make_product(name=f"Drop {number}")

    sliders = client.get("/api/sliders").get_json()["sliders"]

    assert len(sliders) == MAX_SLIDERS
    assert all(slider["synthesized"] for slider in sliders)
    assert db.sliders.count_documents({}) == 0


def test_admin_slider_listing_does_not_persist(client, db, admin_headers, make_product):
    make_product()

    sliders = client.get("/api/admin/sliders", headers=admin_headers).get_json()["sliders"]

    assert len(sliders) == 1
    assert db.sliders.count_documents({}) == 0


def test_quick_add_persists_sliders(client, db, admin_headers, make_product):
    for number in range(2):
        make_product(name=f"Drop {number}")

    response = client.post("/api/admin/sliders/quick-add", headers=admin_headers)

    assert response.status_code == 201
    assert len(response.get_json()["sliders"]) == 2
    assert db.sliders.count_documents({}) == 2
    public = client.get("/api/sliders").get_json()["sliders"]
    assert not any(slider["synthesized"] for slider in public)


def test_update_and_hide_slider(client, admin_headers):
    slider = create_slider(client, admin_headers, 1).get_json()["slider"]

    response = client.put(
        f"/api/admin/sliders/{slider['id']}",
        json={"title": "Summer", "is_active": False},
        headers=admin_headers,
    )

    assert response.get_json()["slider"]["title"] == "Summer"
    assert client.get("/api/sliders").get_json()["sliders"] == []


def test_newsletter_subscribe(client, db):
    first = client.post("/api/newsletter/subscribe", json={"email": "Fan@Example.com"})
    again = client.post("/api/newsletter/subscribe", json={"email": "fan@example.com"})
    invalid = client.post("/api/newsletter/subscribe", json={"email": "not-an-email"})

    assert first.status_code == 201
    assert again.status_code == 400
    assert again.get_json()["message"] == "You're already on the list!"
    assert invalid.status_code == 400
    assert db.newsletter.find_one({"email": "fan@example.com"})["is_active"] is True
