from __future__ import annotations

import hashlib
import logging
import re
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from categorization.categorizer import RuleBasedCategorizer, detect_recurring
from db.models import Account, File, Statement, Submission, Transaction
from entities.resolver import EntityResolver
from settings.config import settings
from webhooks.schemas import BankStatementCallback, StatementSummary, StatementTransaction

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
FEE = "fee"

FEE_PATTERN = re.compile(r"NSF|FEE|OVERDRAFT|SERVICE|CHARGE", re.IGNORECASE)


def _account_key(account_number: str) -> str:
    digits = re.sub(r"\D", "", account_number)
    return digits or account_number.strip().upper()


def mask_account_number(account_number: str) -> str:
    return f"****{_account_key(account_number)[-4:]}"


def hash_account_number(account_number: str) -> str:
    return hashlib.sha256(_account_key(account_number).encode("utf-8")).hexdigest()


def transaction_type(amount: Decimal, description: str) -> str:
    if amount >= 0:
        return DEPOSIT
    if FEE_PATTERN.search(description or ""):
        return FEE
    return WITHDRAWAL


def reconciliation_difference(opening: Decimal, amounts: Sequence[Decimal], closing: Decimal) -> Decimal:
    return (opening + sum(amounts, Decimal("0")) - closing).quantize(CENT)


class StatementWriter:
    """
    Writes one extracted bank statement: account upsert, statement, transactions.

    Runs inside the callback processor's transaction; nothing here commits.
    """

    def __init__(
        self,
        resolver: EntityResolver,
        categorizer: Optional[RuleBasedCategorizer] = None,
        epsilon: Optional[float] = None,
    ) -> None:
        self.resolver = resolver
        self.categorizer = categorizer or RuleBasedCategorizer()
        self.epsilon = Decimal(str(settings.RECONCILIATION_EPSILON if epsilon is None else epsilon))

    async def write(self, session: AsyncSession, file: File, callback: BankStatementCallback) -> Statement:
        payload = callback.extraction_payload
        summary = payload.summary
        txns = payload.transactions

        account = await self._upsert_account(session, file, summary, txns)
        statement = self._build_statement(file, account, callback)
        session.add(statement)
        await session.flush()

        session.add_all(self._build_transactions(file, statement, txns))
        await session.flush()

        if summary.company and summary.company.strip():
            await self._link_company(session, file, account, summary)

        logger.info(
            "Statement written",
            extra={
                "file_id": str(file.id),
                "statement_id": str(statement.id),
                "transaction_count": len(txns),
                "is_reconciled": statement.is_reconciled,
            },
        )
        return statement

    def _build_statement(self, file: File, account: Account, callback: BankStatementCallback) -> Statement:
        summary = callback.extraction_payload.summary
        amounts = [t.amount for t in callback.extraction_payload.transactions]
        credits = [a for a in amounts if a >= 0]
        debits = [a for a in amounts if a < 0]
        difference = reconciliation_difference(summary.start_balance, amounts, summary.end_balance)

        dates = [t.transaction_date for t in callback.extraction_payload.transactions]
        return Statement(
            file_id=file.id,
            submission_id=file.submission_id,
            account_id=account.id,
            org_id=file.org_id,
            extraction_job_id=callback.job_id,
            period_start=summary.statement_start_date or (min(dates) if dates else None),
            period_end=summary.statement_end_date or (max(dates) if dates else None),
            opening_balance=summary.start_balance,
            closing_balance=summary.end_balance,
            total_credits=sum(credits, Decimal("0")),
            # debits are stored as a positive magnitude
            total_debits=abs(sum(debits, Decimal("0"))),
            reported_total_credits=summary.total_credits,
            reported_total_debits=abs(summary.total_debits) if summary.total_debits is not None else None,
            credit_count=len(credits),
            debit_count=len(debits),
            transaction_count=len(amounts),
            reconciliation_difference=difference,
            is_reconciled=abs(difference) < self.epsilon,
            partial_success=callback.partial_success,
            extraction_errors=list(callback.extraction_errors),
        )

    def _build_transactions(
        self, file: File, statement: Statement, txns: List[StatementTransaction]
    ) -> List[Transaction]:
        recurring = detect_recurring([t.description for t in txns], [float(t.amount) for t in txns])
        rows = []
        for seq, (t, repeats) in enumerate(zip(txns, recurring), start=1):
            category, merchant = t.category, t.merchant
            if category is None:
                guessed, guessed_merchant = self.categorizer.categorize(t.description, float(t.amount))
                category = guessed
                merchant = merchant or guessed_merchant
            rows.append(
                Transaction(
                    statement_id=statement.id,
                    submission_id=file.submission_id,
                    org_id=file.org_id,
                    sequence_number=seq,
                    transaction_date=t.transaction_date,
                    description=t.description,
                    amount=t.amount,
                    running_balance=t.balance,
                    transaction_type=transaction_type(t.amount, t.description),
                    category=category,
                    merchant=merchant,
                    is_recurring=t.is_recurring if t.is_recurring is not None else repeats,
                )
            )
        return rows

    async def _upsert_account(
        self, session: AsyncSession, file: File, summary: StatementSummary, txns: List[StatementTransaction]
    ) -> Account:
        account_hash = hash_account_number(summary.account_number)
        last_date = max((t.transaction_date for t in txns), default=summary.statement_end_date)

        account = await self._find_account(session, file, account_hash)
        if account is None:
            try:
                async with session.begin_nested():
                    account = Account(
                        submission_id=file.submission_id,
                        org_id=file.org_id,
                        account_number_masked=mask_account_number(summary.account_number),
                        account_number_hash=account_hash,
                        bank_name=summary.bank_name,
                        holder_name=summary.account_holder,
                        latest_balance=summary.end_balance,
                        last_transaction_date=last_date,
                    )
                    session.add(account)
                return account
            except IntegrityError:
                # another statement of the same submission created it first
                account = await self._find_account(session, file, account_hash)
                if account is None:
                    raise

        # the balance follows whichever statement reaches furthest in time
        if last_date is not None and (account.last_transaction_date is None or last_date >= account.last_transaction_date):
            account.last_transaction_date = last_date
            account.latest_balance = summary.end_balance
        elif account.latest_balance is None:
            account.latest_balance = summary.end_balance
        account.bank_name = account.bank_name or summary.bank_name
        account.holder_name = account.holder_name or summary.account_holder
        await session.flush()
        return account

    async def _find_account(self, session: AsyncSession, file: File, account_hash: str) -> Optional[Account]:
        result = await session.execute(
            select(Account).where(
                Account.submission_id == file.submission_id,
                Account.account_number_hash == account_hash,
            )
        )
        return result.scalar_one_or_none()

    async def _link_company(self, session: AsyncSession, file: File, account: Account, summary: StatementSummary) -> None:
        resolved = await self.resolver.resolve(session, file.org_id, summary.company, summary.ein)
        if account.company_id is None:
            account.company_id = resolved.entity_id
        submission = await session.get(Submission, file.submission_id)
        if submission is not None and submission.company_id is None:
            submission.company_id = resolved.entity_id
        await session.flush()
