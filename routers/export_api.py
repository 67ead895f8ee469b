from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
from csv_utils import ASSET_ITEM_COLUMNS, LOAN_LINE_COLUMNS, rows_to_csv_response
from dependencies import get_db
from filter_helpers import blank_to_none, normalize_asset_status, normalize_loan_status

router = APIRouter()


@router.get("/export/asset-items.csv")
def export_asset_items_csv(
    q: Optional[str] = None,
    status: Optional[str] = None,
    asset_model_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    # 一覧と同じ条件。件数上限なし
    items = crud.list_asset_items(
        db,
        q=blank_to_none(q),
        status=normalize_asset_status(status),
        asset_model_id=blank_to_none(asset_model_id),
        limit=None,
        offset=0,
    )
    return rows_to_csv_response(items, filename="asset_items_export.csv", columns=ASSET_ITEM_COLUMNS)


@router.get("/export/loan-lines.csv")
def export_loan_lines_csv(status: Optional[str] = None, db: Session = Depends(get_db)):
    rows = crud.list_loan_lines_for_export(db, status=normalize_loan_status(status))
    return rows_to_csv_response(rows, filename="loan_lines_export.csv", columns=LOAN_LINE_COLUMNS)
