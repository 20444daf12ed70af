from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from categorization.categories import DEBT_REPAYMENT_MCA, NON_REVENUE_CATEGORIES, UNCATEGORIZED
from db.models import Account, Statement, SubmissionMetrics, Transaction, utcnow
from settings.config import settings

logger = logging.getLogger(__name__)

NSF_PATTERN = r"NSF|INSUFFICIENT|OVERDRAFT"

FRAME_COLUMNS = [
  "account_id", "period_start", "sequence_number", "transaction_date",
  "amount", "running_balance", "description", "category",
]


def _money(value: Any) -> Optional[Decimal]:
  if value is None or pd.isna(value):
    return None
  return Decimal(str(round(float(value), 2)))


class MetricsService:
  """Rebuilds the SubmissionMetrics rollup from the submission's transactions."""

  def __init__(self, low_balance_threshold: float | None = None) -> None:
    self.low_balance_threshold = settings.LOW_BALANCE_THRESHOLD if low_balance_threshold is None else low_balance_threshold

  async def load_frame(self, session: AsyncSession, submission_id: uuid.UUID) -> pd.DataFrame:
    rows = (
      await session.execute(
        select(
          Statement.account_id,
          Statement.period_start,
          Transaction.sequence_number,
          Transaction.transaction_date,
          Transaction.amount,
          Transaction.running_balance,
          Transaction.description,
          Transaction.category,
        )
        .join(Statement, Statement.id == Transaction.statement_id)
        .where(Statement.submission_id == submission_id)
      )
    ).all()
    df = pd.DataFrame([tuple(r) for r in rows], columns=FRAME_COLUMNS)
    if df.empty:
      return df
    df["transaction_date"] = pd.to_datetime(df["transaction_date"])
    df["period_start"] = pd.to_datetime(df["period_start"])
    df["amount"] = df["amount"].astype(float)
    df["running_balance"] = df["running_balance"].astype("float64")
    df["description"] = df["description"].fillna("").astype(str)
    return df

  def end_of_day_balances(self, df: pd.DataFrame) -> pd.Series:
    """Last known running balance per (account, date)."""
    s = df.dropna(subset=["running_balance"])
    if s.empty:
      return pd.Series(dtype="float64")
    s = s.sort_values(["account_id", "transaction_date", "period_start", "sequence_number"])
    return s.groupby(["account_id", "transaction_date"])["running_balance"].last()

  def compute(self, df: pd.DataFrame, account_count: int, statement_count: int) -> Dict[str, Any]:
    metrics: Dict[str, Any] = {
      "date_range_start": None, "date_range_end": None,
      "total_deposits": Decimal("0"), "deposit_count": 0, "largest_deposit": None,
      "total_withdrawals": Decimal("0"), "withdrawal_count": 0, "largest_withdrawal": None,
      "avg_daily_balance": None, "min_balance": None, "max_balance": None,
      "true_revenue": Decimal("0"), "true_revenue_count": 0,
      "negative_balance_days": 0, "low_balance_days": 0,
      "nsf_count": 0, "nsf_total_amount": Decimal("0"),
      "total_mca_debits": Decimal("0"), "mca_debit_count": 0,
      "total_transactions": 0, "categorized_count": 0, "uncategorized_count": 0,
      "account_count": account_count, "statement_count": statement_count,
    }
    if df.empty:
      return metrics

    # zero-amount postings are credits, same as the stored transaction_type
    deposits = df[df["amount"] >= 0]
    withdrawals = df[df["amount"] < 0]
    category = df["category"].fillna(UNCATEGORIZED)
    categorized = (category != UNCATEGORIZED) & (category.str.strip() != "")
    revenue = deposits[~category.loc[deposits.index].isin(NON_REVENUE_CATEGORIES)]
    nsf = df[df["description"].str.contains(NSF_PATTERN, case=False, regex=True)]
    mca = withdrawals[category.loc[withdrawals.index] == DEBT_REPAYMENT_MCA]

    metrics.update(
      date_range_start=df["transaction_date"].min().date(),
      date_range_end=df["transaction_date"].max().date(),
      total_deposits=_money(deposits["amount"].sum()),
      deposit_count=int(len(deposits)),
      largest_deposit=_money(deposits["amount"].max()) if not deposits.empty else None,
      total_withdrawals=_money(withdrawals["amount"].abs().sum()),
      withdrawal_count=int(len(withdrawals)),
      largest_withdrawal=_money(withdrawals["amount"].abs().max()) if not withdrawals.empty else None,
      true_revenue=_money(revenue["amount"].sum()),
      true_revenue_count=int(len(revenue)),
      nsf_count=int(len(nsf)),
      nsf_total_amount=_money(nsf.loc[nsf["amount"] < 0, "amount"].abs().sum()),
      total_mca_debits=_money(mca["amount"].abs().sum()),
      mca_debit_count=int(len(mca)),
      total_transactions=int(len(df)),
      categorized_count=int(categorized.sum()),
      uncategorized_count=int((~categorized).sum()),
    )

    balances = df["running_balance"].dropna()
    if not balances.empty:
      eod = self.end_of_day_balances(df)
      dates = eod.index.get_level_values("transaction_date")
      metrics.update(
        min_balance=_money(balances.min()),
        max_balance=_money(balances.max()),
        avg_daily_balance=_money(eod.mean()),
        negative_balance_days=int(pd.Series(dates[eod.values < 0]).nunique()),
        low_balance_days=int(pd.Series(dates[eod.values < self.low_balance_threshold]).nunique()),
      )
    return metrics

  async def rebuild(self, session: AsyncSession, submission_id: uuid.UUID) -> SubmissionMetrics:
    """Read-and-replace: every column is recomputed, nothing is patched incrementally."""
    df = await self.load_frame(session, submission_id)
    account_count = (
      await session.execute(select(func.count()).select_from(Account).where(Account.submission_id == submission_id))
    ).scalar_one()
    statement_count = (
      await session.execute(select(func.count()).select_from(Statement).where(Statement.submission_id == submission_id))
    ).scalar_one()
    values = self.compute(df, int(account_count), int(statement_count))
    values["calculated_at"] = utcnow()

    row = await session.get(SubmissionMetrics, submission_id)
    if row is None:
      row = SubmissionMetrics(submission_id=submission_id, **values)
      session.add(row)
    else:
      for key, value in values.items():
        setattr(row, key, value)
    await session.flush()
    logger.info("Submission metrics rebuilt", extra={"submission_id": str(submission_id), "transactions": values["total_transactions"]})
    return row


@lru_cache(maxsize=1)
def get_metrics_service() -> "MetricsService":
  return MetricsService()
