from conftest import add_crafter, add_product


def test_root(client):
    res = client.get("/")
    assert res.status_code == 200
    assert res.json()["message"] == "Crafters Marketplace API running"


def test_seed_and_list_categories(client, db):
    res = client.get("/seed/init")
    assert res.json() == {"ok": True, "created": 6}
    # idempotent by slug
    assert client.get("/seed/init").json()["created"] == 0

    db["category"].update_one({"slug": "art"}, {"$set": {"is_active": False}})
    data = client.get("/api/categories").json()["data"]
    assert [c["slug"] for c in data] == ["jewelry", "pottery", "textiles", "woodwork", "other"]


def test_public_crafter_listing_hides_unverified(client, db):
    add_crafter(db, name="Zed Weaving")
    add_crafter(db, name="Anchor Woodwork")
    add_crafter(db, name="Pending Prints", verified=False)

    body = client.get("/api/crafters").json()
    assert body["count"] == 2
    assert [c["name"] for c in body["data"]] == ["Anchor Woodwork", "Zed Weaving"]


def test_unverified_crafter_detail_is_not_found(client, db):
    crafter_id = add_crafter(db, verified=False)
    assert client.get(f"/api/crafters/{crafter_id}").status_code == 404


def test_crafter_detail_includes_products(client, db):
    crafter_id = add_crafter(db)
    add_product(db, crafter_id, name="Mug")
    res = client.get(f"/api/crafters/{crafter_id}")
    assert res.status_code == 200
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Mug"]


def test_malformed_crafter_id(client):
    res = client.get("/api/crafters/not-an-id")
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Invalid ID format"}


def test_product_listing_hides_unverified_crafters(client, db):
    verified = add_crafter(db, name="Harbour Pottery")
    pending = add_crafter(db, name="Pending Pots", verified=False)
    add_product(db, verified, name="Visible Mug")
    add_product(db, pending, name="Hidden Mug")

    body = client.get("/api/products").json()
    assert [p["name"] for p in body["data"]] == ["Visible Mug"]
    assert body["data"][0]["crafter"]["name"] == "Harbour Pottery"
    assert "embedding" not in body["data"][0]


def test_product_detail_of_unverified_crafter_is_not_found(client, db):
    pending = add_crafter(db, verified=False)
    product_id = add_product(db, pending)
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_product_listing_filters_and_sort(client, db):
    crafter_id = add_crafter(db)
    add_product(db, crafter_id, name="Bead Necklace", price=30.0, category="Jewelry", featured=True)
    add_product(db, crafter_id, name="Small Bowl", price=12.0, embedding=[0.1, 0.2])
    add_product(db, crafter_id, name="Large Bowl", price=40.0)

    names = lambda res: [p["name"] for p in res.json()["data"]]
    assert names(client.get("/api/products", params={"category": "Jewelry"})) == ["Bead Necklace"]
    assert names(client.get("/api/products", params={"featured": "true"})) == ["Bead Necklace"]
    assert names(client.get("/api/products", params={"q": "bowl", "sort": "price-asc"})) == ["Small Bowl", "Large Bowl"]
    assert names(client.get("/api/products", params={"min_price": 20, "max_price": 35})) == ["Bead Necklace"]
    assert names(client.get("/api/products", params={"sort": "price-desc"})) == ["Large Bowl", "Bead Necklace", "Small Bowl"]
    assert all("embedding" not in p for p in client.get("/api/products").json()["data"])


def test_product_search_text_is_matched_literally(client, db):
    crafter_id = add_crafter(db)
    add_product(db, crafter_id, name="Sea Glaze Mug (large)")
    add_product(db, crafter_id, name="Sea Glaze Mug")

    res = client.get("/api/products", params={"q": "mug ("})
    assert res.status_code == 200
    assert [p["name"] for p in res.json()["data"]] == ["Sea Glaze Mug (large)"]
