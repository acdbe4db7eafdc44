# app/api/dashboard.py

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.engine import Engine

from app.db.engine import get_engine
from app.models.dashboard import FinancialSummaryOut
from app.services.aggregator import get_financial_summary
from app.services.ledger import today

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/summary", response_model=FinancialSummaryOut)
def financial_summary(
    start_date: Optional[date] = Query(
        default=None,
        description="ISO date; defaults to January 1st of the current year",
    ),
    end_date: Optional[date] = Query(
        default=None,
        description="ISO date; defaults to today in the configured timezone",
    ),
    engine: Engine = Depends(get_engine),
) -> FinancialSummaryOut:
    """
    Income, expenses, receivables and monthly trends for the date range.
    """
    end_date = end_date or today()
    start_date = start_date or date(end_date.year, 1, 1)
    return FinancialSummaryOut.model_validate(
        get_financial_summary(engine, start_date, end_date, as_of=end_date)
    )
