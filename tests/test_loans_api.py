def _employee(client, first="Alice", last="Martin"):
    r = client.post("/employees", json={"first_name": first, "last_name": last})
    assert r.status_code == 201, r.text
    return r.json()


def _laptops(client, quantity=1):
    r = client.post(
        "/asset-models",
        json={"type": "laptop", "brand": "Dell", "model_name": "Latitude 5440", "quantity": quantity},
    )
    assert r.status_code == 201, r.text
    return r.json()["asset_items"]


def _adapters(client, quantity=2):
    r = client.post(
        "/asset-models",
        json={"type": "adapter", "brand": "Anker", "model_name": "USB-C Hub", "quantity": quantity, "consumable": True},
    )
    assert r.status_code == 201, r.text
    return r.json()["stock_item"]


def _open(client, employee_id, actor="clerk-1"):
    r = client.post("/loans", json={"employee_id": employee_id}, headers={"X-Actor-Id": actor})
    assert r.status_code == 201, r.text
    return r.json()


def test_loan_flow_over_http(client):
    emp = _employee(client)
    (item,) = _laptops(client)
    loan = _open(client, emp["id"])
    assert loan["created_by"] == "clerk-1"

    r = client.post(f"/loans/{loan['id']}/lines", json={"asset_item_id": item["id"]})
    assert r.status_code == 201, r.text
    line = r.json()
    assert line["kind"] == "asset"

    r = client.get(f"/asset-items/{item['id']}")
    assert r.json()["status"] == "PRETE"

    # already loaned
    r = client.post(f"/loans/{loan['id']}/lines", json={"asset_item_id": item["id"]})
    assert r.status_code == 409
    assert r.json() == {"code": "CONFLICT", "detail": "asset item is not available (status=PRETE)"}

    # close with an outstanding line
    r = client.post(f"/loans/{loan['id']}/close")
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"

    r = client.post(f"/loan-lines/{line['id']}/return")
    assert r.status_code == 200
    assert r.json()["returned_at"] is not None

    r = client.post(f"/loans/{loan['id']}/close")
    assert r.status_code == 200
    assert r.json()["status"] == "CLOSED"

    r = client.get(f"/asset-items/{item['id']}")
    assert r.json()["status"] == "EN_STOCK"


def test_outcome_codes_are_distinct(client):
    emp = _employee(client)
    stock = _adapters(client, quantity=2)
    loan = _open(client, emp["id"])

    r = client.post(f"/loans/{loan['id']}/lines", json={"stock_item_id": stock["id"], "quantity": 3})
    assert r.status_code == 409
    assert r.json()["code"] == "INSUFFICIENT_STOCK"

    r = client.post(f"/loans/{loan['id']}/lines", json={})
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_ARGUMENT"

    r = client.post("/loans/missing/lines", json={"stock_item_id": stock["id"]})
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"

    r = client.get("/loans/missing")
    assert r.status_code == 404
    assert r.json() == {"code": "NOT_FOUND", "detail": "loan not found"}

    r = client.post("/loans", json={"employee_id": "nobody"})
    assert r.status_code == 404

    r = client.post(f"/loans/{loan['id']}/close")
    assert r.status_code == 200
    r = client.post(f"/loans/{loan['id']}/lines", json={"stock_item_id": stock["id"]})
    assert r.status_code == 409
    assert r.json()["code"] == "INVALID_STATE"

    r = client.get(f"/stock-items/{stock['id']}")
    assert r.json()["loaned"] == 0


def test_force_return_and_remove_line(client):
    emp = _employee(client)
    items = _laptops(client, quantity=2)
    stock = _adapters(client, quantity=5)
    loan = _open(client, emp["id"])

    lines = []
    for body in ({"asset_item_id": items[0]["id"]}, {"asset_item_id": items[1]["id"]}, {"stock_item_id": stock["id"], "quantity": 2}):
        r = client.post(f"/loans/{loan['id']}/lines", json=body)
        assert r.status_code == 201, r.text
        lines.append(r.json())

    r = client.delete(f"/loans/{loan['id']}/lines/{lines[1]['id']}")
    assert r.status_code == 200
    assert len(r.json()["lines"]) == 2
    assert client.get(f"/asset-items/{items[1]['id']}").json()["status"] == "EN_STOCK"

    r = client.post(f"/loans/{loan['id']}/force-return")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "CLOSED"
    assert all(l["returned_at"] for l in data["lines"])
    assert client.get(f"/stock-items/{stock['id']}").json()["loaned"] == 0


def test_batch_close_api(client):
    emp = _employee(client)
    (item,) = _laptops(client)
    a = _open(client, emp["id"])
    b = _open(client, emp["id"])
    client.post(f"/loans/{b['id']}/lines", json={"asset_item_id": item["id"]})

    r = client.post("/loans/batch-close", json={"loan_ids": [a["id"], b["id"]]})
    assert r.status_code == 200
    assert r.json() == [
        {"loan_id": a["id"], "ok": True, "code": None, "detail": None},
        {"loan_id": b["id"], "ok": False, "code": "INVALID_STATE", "detail": "1 line(s) not returned yet"},
    ]


def test_signatures_and_delete(client):
    emp = _employee(client)
    stock = _adapters(client, quantity=3)
    unsigned = _open(client, emp["id"])
    signed = _open(client, emp["id"])
    client.post(f"/loans/{unsigned['id']}/lines", json={"stock_item_id": stock["id"], "quantity": 2})

    r = client.post(f"/loans/{signed['id']}/signatures/pickup", json={"reference": "sig/1.png"})
    assert r.status_code == 200
    assert r.json()["pickup_signature_ref"] == "sig/1.png"

    r = client.post(f"/loans/{signed['id']}/signatures/witness", json={"reference": "x"})
    assert r.status_code == 422

    r = client.delete(f"/loans/{signed['id']}")
    assert r.status_code == 409

    r = client.delete(f"/loans/{unsigned['id']}")
    assert r.status_code == 204
    assert client.get(f"/loans/{unsigned['id']}").status_code == 404
    assert client.get(f"/stock-items/{stock['id']}").json()["loaned"] == 0


def test_list_loans_and_meta(client):
    alice = _employee(client)
    bob = _employee(client, first="Bob", last="Durand")
    for _ in range(3):
        _open(client, alice["id"])
    closed = _open(client, bob["id"])
    client.post(f"/loans/{closed['id']}/close")

    r = client.get("/loans?limit=2&offset=0")
    assert r.status_code == 200
    assert len(r.json()) == 2

    r = client.get(f"/loans?employee_id={alice['id']}")
    assert len(r.json()) == 3

    r = client.get("/loans?status=closed")
    assert [l["id"] for l in r.json()] == [closed["id"]]

    meta = client.get("/loans/meta?limit=3").json()
    assert meta == {"total": 4, "limit": 3, "offset": 0, "total_pages": 2}

    # empty-string filters should not 422
    r = client.get("/loans?status=&employee_id=")
    assert r.status_code == 200
    assert len(r.json()) == 4
