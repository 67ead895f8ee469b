import csv
import io
from datetime import datetime

from csv_utils import ASSET_ITEM_COLUMNS, column, format_cell, rows_to_csv_response


def _read(client, url):
    r = client.get(url)
    assert r.status_code == 200, r.text
    assert r.headers["content-type"].startswith("text/csv")
    return list(csv.reader(io.StringIO(r.text)))


def test_format_cell():
    assert format_cell(None) == ""
    assert format_cell(3) == "3"
    assert format_cell(datetime(2024, 5, 1, 9, 30)) == "2024-05-01T09:30:00"


def test_column_reads_dicts_and_objects():
    class Row:
        asset_tag = "LAP-001"

    name, getter = column("tag", "asset_tag")
    assert name == "tag"
    assert getter({"asset_tag": "MON-002"}) == "MON-002"
    assert getter(Row()) == "LAP-001"


def test_rows_to_csv_response_headers():
    resp = rows_to_csv_response([], filename="x.csv", columns=ASSET_ITEM_COLUMNS)
    assert resp.headers["content-disposition"] == 'attachment; filename="x.csv"'


def test_export_asset_items_csv(client):
    r = client.post(
        "/asset-models",
        json={"type": "monitor", "brand": "Dell", "model_name": "P2422H", "quantity": 2},
    )
    assert r.status_code == 201

    rows = _read(client, "/export/asset-items.csv")
    assert rows[0] == [h for h, _ in ASSET_ITEM_COLUMNS]
    assert [r[2] for r in rows[1:]] == ["MON-001", "MON-002"]
    assert {r[4] for r in rows[1:]} == {"EN_STOCK"}

    rows = _read(client, "/export/asset-items.csv?status=PRETE")
    assert len(rows) == 1


def test_export_loan_lines_csv(client):
    emp = client.post("/employees", json={"first_name": "Hugo", "last_name": "Moreau"}).json()
    stock = client.post(
        "/asset-models",
        json={"type": "cable", "brand": "Ugreen", "model_name": "DP 1m", "quantity": 5, "consumable": True},
    ).json()["stock_item"]
    loan = client.post("/loans", json={"employee_id": emp["id"]}).json()
    client.post(f"/loans/{loan['id']}/lines", json={"stock_item_id": stock["id"], "quantity": 2})

    rows = _read(client, "/export/loan-lines.csv")
    header, line = rows
    record = dict(zip(header, line))
    assert record["loan_id"] == loan["id"]
    assert record["loan_status"] == "OPEN"
    assert record["employee"] == "Hugo Moreau"
    assert record["kind"] == "stock"
    assert record["label"] == "Ugreen DP 1m"
    assert record["quantity"] == "2"
    assert record["returned_at"] == ""

    rows = _read(client, "/export/loan-lines.csv?status=CLOSED")
    assert len(rows) == 1
