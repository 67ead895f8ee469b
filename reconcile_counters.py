#!/usr/bin/env python3
# reconcile_counters.py
"""
Recompute stock_items.loaned and asset_items.status from the unreturned lines
of live (not deleted) loans. Dry-run by default; pass --apply to write.
"""
import argparse
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger("reconcile_counters")

OPEN_STOCK_SQL = """
    SELECT s.id AS id, s.quantity AS quantity, s.loaned AS loaned,
           COALESCE((
             SELECT SUM(l.quantity)
             FROM loan_lines l
             JOIN loans o ON o.id = l.loan_id
             WHERE l.stock_item_id = s.id
               AND l.returned_at IS NULL
               AND o.deleted_at IS NULL
           ), 0) AS expected
    FROM stock_items s
"""

OPEN_ASSET_SQL = """
    SELECT a.id AS id, a.asset_tag AS asset_tag, a.status AS status,
           EXISTS (
             SELECT 1
             FROM loan_lines l
             JOIN loans o ON o.id = l.loan_id
             WHERE l.asset_item_id = a.id
               AND l.returned_at IS NULL
               AND o.deleted_at IS NULL
           ) AS on_loan
    FROM asset_items a
"""


def now_utc() -> str:
    # SQLAlchemy の DateTime(SQLite) と同じ書式
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


def find_drift(conn: sqlite3.Connection) -> dict:
    stock: list[dict] = []
    assets: list[dict] = []
    errors: list[str] = []

    for r in conn.execute(OPEN_STOCK_SQL).fetchall():
        if r["loaned"] == r["expected"]:
            continue
        if r["expected"] > r["quantity"]:
            errors.append(
                f"stock item {r['id']}: {r['expected']} unit(s) on loan but quantity is {r['quantity']}"
            )
            continue
        stock.append({"id": r["id"], "loaned": r["loaned"], "expected": r["expected"]})

    for r in conn.execute(OPEN_ASSET_SQL).fetchall():
        if r["on_loan"] and r["status"] != "PRETE":
            assets.append({"id": r["id"], "asset_tag": r["asset_tag"], "status": r["status"], "expected": "PRETE"})
        elif not r["on_loan"] and r["status"] == "PRETE":
            assets.append({"id": r["id"], "asset_tag": r["asset_tag"], "status": r["status"], "expected": "EN_STOCK"})

    return {"stock": stock, "assets": assets, "errors": errors}


def reconcile(db_path: Path, *, apply: bool = False) -> dict:
    if not db_path.exists():
        raise FileNotFoundError(db_path)

    conn = sqlite3.connect(db_path.as_posix())
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys=ON;")
        # 読み取りから書き込みまで他の書き手を止める
        conn.execute("BEGIN IMMEDIATE;")
        try:
            drift = find_drift(conn)
            if apply:
                now = now_utc()
                conn.executemany(
                    "UPDATE stock_items SET loaned = ?, updated_at = ? WHERE id = ?",
                    [(d["expected"], now, d["id"]) for d in drift["stock"]],
                )
                conn.executemany(
                    "UPDATE asset_items SET status = ?, updated_at = ? WHERE id = ?",
                    [(d["expected"], now, d["id"]) for d in drift["assets"]],
                )
                conn.execute("COMMIT;")
            else:
                conn.execute("ROLLBACK;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()

    drift["applied"] = apply
    return drift


def main() -> None:
    ap = argparse.ArgumentParser(description="Recompute loan counters from unreturned loan lines.")
    ap.add_argument("--db", default="data/loans.db", help="Path to SQLite DB (default: data/loans.db)")
    ap.add_argument("--apply", action="store_true", help="Write the corrections (default: report only)")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    result = reconcile(Path(args.db), apply=args.apply)

    for d in result["stock"]:
        logger.info("stock item %s loaned=%s expected=%s", d["id"], d["loaned"], d["expected"])
    for d in result["assets"]:
        logger.info("asset item %s (%s) status=%s expected=%s", d["id"], d["asset_tag"], d["status"], d["expected"])
    for e in result["errors"]:
        logger.warning("  - %s", e)

    logger.info(
        "%s stock=%s assets=%s errors=%s",
        "Applied" if result["applied"] else "Dry-run",
        len(result["stock"]),
        len(result["assets"]),
        len(result["errors"]),
    )


if __name__ == "__main__":
    main()
