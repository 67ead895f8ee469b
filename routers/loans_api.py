from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
from dependencies import get_db, get_engine
from errors import NotFound
from filter_helpers import blank_to_none, normalize_limit, normalize_loan_status, normalize_offset
from models import (
    BatchCloseIn,
    BatchCloseResult,
    Loan,
    LoanLine,
    LoanLineIn,
    LoanOpen,
    PageMeta,
    SignatureIn,
    SignatureKind,
)
from reservations import ReservationEngine

router = APIRouter()


@router.post("/loans", response_model=Loan, status_code=201)
def open_loan_api(body: LoanOpen, engine: ReservationEngine = Depends(get_engine)):
    return engine.open_loan(body.employee_id)


@router.get("/loans", response_model=list[Loan])
def list_loans_api(
    status: Optional[str] = None,
    employee_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return crud.list_loans(
        db,
        status=normalize_loan_status(status),
        employee_id=blank_to_none(employee_id),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/loans/meta", response_model=PageMeta)
def loans_meta_api(
    status: Optional[str] = None,
    employee_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    meta = crud.loans_meta(
        db,
        status=normalize_loan_status(status),
        employee_id=blank_to_none(employee_id),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )
    return PageMeta(**meta)


@router.post("/loans/batch-close", response_model=list[BatchCloseResult])
def batch_close_api(body: BatchCloseIn, engine: ReservationEngine = Depends(get_engine)):
    return engine.batch_close(body.loan_ids)


@router.get("/loans/{loan_id}", response_model=Loan)
def get_loan_api(loan_id: str, db: Session = Depends(get_db)):
    loan = crud.get_loan(db, loan_id)
    if not loan:
        raise NotFound("loan not found")
    return loan


@router.delete("/loans/{loan_id}", status_code=204)
def delete_loan_api(loan_id: str, engine: ReservationEngine = Depends(get_engine)):
    engine.delete_loan(loan_id)
    return None


@router.post("/loans/{loan_id}/lines", response_model=LoanLine, status_code=201)
def add_line_api(loan_id: str, body: LoanLineIn, engine: ReservationEngine = Depends(get_engine)):
    return engine.add_line(
        loan_id,
        asset_item_id=blank_to_none(body.asset_item_id),
        stock_item_id=blank_to_none(body.stock_item_id),
        quantity=body.quantity,
    )


@router.delete("/loans/{loan_id}/lines/{line_id}", response_model=Loan)
def remove_line_api(loan_id: str, line_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.remove_line(loan_id, line_id)


@router.post("/loan-lines/{line_id}/return", response_model=LoanLine)
def return_line_api(line_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.return_line(line_id)


@router.post("/loans/{loan_id}/close", response_model=Loan)
def close_loan_api(loan_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.close_loan(loan_id)


@router.post("/loans/{loan_id}/force-return", response_model=Loan)
def force_return_api(loan_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.force_return_all(loan_id)


@router.post("/loans/{loan_id}/signatures/{kind}", response_model=Loan)
def record_signature_api(
    loan_id: str,
    kind: SignatureKind,
    body: SignatureIn,
    engine: ReservationEngine = Depends(get_engine),
):
    return engine.record_signature(loan_id, kind, body.reference)
