from __future__ import annotations

# Category labels shared by the categorizer and the submission metrics rollup.
REVENUE = "Revenue"
ATM_CASH_INFLOWS = "ATM Cash Inflows"
ATM_CASH_OUTFLOWS = "ATM Cash Outflows"
CHECK_DEPOSITS = "Check Deposits"
P2P_INFLOWS = "P2P Transfers Inflows"
P2P_OUTFLOWS = "P2P Transfers Outflows"
PAYROLL = "Payroll and Consultants"
RENT = "Rent"
UTILITIES = "Utilities"
INSURANCE = "Insurance"
SOFTWARE = "Software"
CHARGES_FEES = "Charges/Fees"
OVERDRAFT_NSF_FEES = "Overdraft/NSF Fees"
DEBT_INVESTMENT = "Debt Investment"
DEBT_INVESTMENT_MCA = "Debt Investment - MCA"
DEBT_REPAYMENT = "Debt Repayment"
DEBT_REPAYMENT_MCA = "Debt Repayment - MCA"
EQUITY_INVESTMENT = "Equity Investment"
INTRA_COMPANY_INFLOWS = "Reconciled Intra-Company Transfers Inflows"
INTRA_COMPANY_OUTFLOWS = "Reconciled Intra-Company Transfers Outflows"
TAXES = "Taxes"
REFUNDS = "Refunds"

UNCATEGORIZED = "Uncategorized"

# Inflows that are money in the account but not earned by the business.
NON_REVENUE_CATEGORIES = frozenset(
    {
        DEBT_INVESTMENT,
        DEBT_INVESTMENT_MCA,
        EQUITY_INVESTMENT,
        INTRA_COMPANY_INFLOWS,
        "Unreconciled Intra-Company Transfers Inflows",
        "Reconciled Intra-Company Transfers",
        "Unreconciled Intra-Company Transfers",
        "Company Investments",
        REFUNDS,
        TAXES,
    }
)
