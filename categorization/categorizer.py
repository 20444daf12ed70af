from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from categorization import categories as cat

CREDIT = "credit"
DEBIT = "debit"
ANY = "any"

# keyword -> (category, merchant_name, direction the rule applies to)
CATEGORY_RULES: dict[str, Tuple[str, Optional[str], str]] = {
    "nsf": (cat.OVERDRAFT_NSF_FEES, None, DEBIT),
    "insufficient funds": (cat.OVERDRAFT_NSF_FEES, None, DEBIT),
    "overdraft": (cat.OVERDRAFT_NSF_FEES, None, DEBIT),
    "service charge": (cat.CHARGES_FEES, None, DEBIT),
    "monthly fee": (cat.CHARGES_FEES, None, DEBIT),
    "wire fee": (cat.CHARGES_FEES, None, DEBIT),
    "ondeck": (cat.DEBT_REPAYMENT_MCA, "OnDeck", DEBIT),
    "kabbage": (cat.DEBT_REPAYMENT_MCA, "Kabbage", DEBIT),
    "fundbox": (cat.DEBT_REPAYMENT_MCA, "Fundbox", DEBIT),
    "merchant cash advance": (cat.DEBT_REPAYMENT_MCA, None, DEBIT),
    "mca ": (cat.DEBT_REPAYMENT_MCA, None, DEBIT),
    "capital funding": (cat.DEBT_INVESTMENT_MCA, None, CREDIT),
    "loan proceeds": (cat.DEBT_INVESTMENT, None, CREDIT),
    "loan pmt": (cat.DEBT_REPAYMENT, None, DEBIT),
    "loan payment": (cat.DEBT_REPAYMENT, None, DEBIT),
    "adp": (cat.PAYROLL, "ADP", DEBIT),
    "gusto": (cat.PAYROLL, "Gusto", DEBIT),
    "payroll": (cat.PAYROLL, None, DEBIT),
    "rent": (cat.RENT, None, DEBIT),
    "comcast": (cat.UTILITIES, "Comcast", DEBIT),
    "electric": (cat.UTILITIES, None, DEBIT),
    "insurance": (cat.INSURANCE, None, DEBIT),
    "microsoft": (cat.SOFTWARE, "Microsoft", DEBIT),
    "google": (cat.SOFTWARE, "Google", DEBIT),
    "irs": (cat.TAXES, "IRS", ANY),
    "atm withdrawal": (cat.ATM_CASH_OUTFLOWS, "ATM", DEBIT),
    "atm deposit": (cat.ATM_CASH_INFLOWS, "ATM", CREDIT),
    "cash deposit": (cat.ATM_CASH_INFLOWS, None, CREDIT),
    "mobile deposit": (cat.CHECK_DEPOSITS, None, CREDIT),
    "check deposit": (cat.CHECK_DEPOSITS, None, CREDIT),
    "remote deposit": (cat.CHECK_DEPOSITS, None, CREDIT),
    "zelle": (cat.P2P_INFLOWS, "Zelle", CREDIT),
    "venmo": (cat.P2P_INFLOWS, "Venmo", CREDIT),
    "transfer from": (cat.INTRA_COMPANY_INFLOWS, None, CREDIT),
    "transfer to": (cat.INTRA_COMPANY_OUTFLOWS, None, DEBIT),
    "stripe": (cat.REVENUE, "Stripe", CREDIT),
    "square": (cat.REVENUE, "Square", CREDIT),
    "shopify": (cat.REVENUE, "Shopify", CREDIT),
    "refund": (cat.REFUNDS, None, DEBIT),
}


class RuleBasedCategorizer:
    def __init__(self, rules: Optional[dict[str, Tuple[str, Optional[str], str]]] = None) -> None:
        self.rules = rules or CATEGORY_RULES
        # Precompile regex patterns for each keyword
        self._patterns: List[Tuple[re.Pattern[str], Tuple[str, Optional[str], str]]] = []
        for keyword, value in self.rules.items():
            pattern = re.compile(re.escape(keyword), flags=re.IGNORECASE)
            self._patterns.append((pattern, value))

    def categorize(self, description: str, amount: float) -> Tuple[Optional[str], Optional[str]]:
        """
        Returns (category, merchant_name); category is None when no rule matches.
        """
        if not description:
            return None, None
        direction = CREDIT if amount >= 0 else DEBIT
        for pattern, (category, merchant, applies_to) in self._patterns:
            if applies_to != ANY and applies_to != direction:
                continue
            if pattern.search(description):
                return category, merchant
        return None, None


def normalize_description(description: str) -> str:
    s = description.upper()
    # reference numbers and dates differ between otherwise identical postings
    s = re.sub(r"[0-9]+", " ", s)
    s = re.sub(r"[^A-Z&\s]", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def detect_recurring(descriptions: Sequence[str], amounts: Sequence[float], min_count: int = 2) -> List[bool]:
    """
    Flag postings whose normalized description and absolute amount repeat at least
    ``min_count`` times. Returned flags line up with the inputs.
    """
    if not descriptions:
        return []
    s = pd.DataFrame({"description": list(descriptions), "amount": list(amounts)})
    s["desc_norm"] = s["description"].fillna("").map(normalize_description)
    s["amount_abs"] = s["amount"].astype(float).abs().round(2)
    counts = s.groupby(["desc_norm", "amount_abs"])["amount_abs"].transform("size")
    flags = (counts >= min_count) & (s["desc_norm"] != "")
    return [bool(f) for f in flags]
