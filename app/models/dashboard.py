# app/models/dashboard.py

from datetime import date
from decimal import Decimal
from typing import Dict, List

from pydantic import BaseModel


class MonthlyTrendOut(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    profit: Decimal


class TrendsOut(BaseModel):
    monthly: List[MonthlyTrendOut]
    income_growth: Decimal
    expense_growth: Decimal


class InvoiceMetricsOut(BaseModel):
    by_status: Dict[str, int]
    overdue_count: int
    total_value: Decimal
    paid_value: Decimal
    outstanding_balance: Decimal
    collection_rate: Decimal


class FinancialSummaryOut(BaseModel):
    start_date: date
    end_date: date
    income: Decimal
    expenses: Decimal
    profit: Decimal
    profit_margin: Decimal
    total_income: Decimal
    total_expenses: Decimal
    total_profit: Decimal
    payments_received: Decimal
    invoices: InvoiceMetricsOut
    trends: TrendsOut
