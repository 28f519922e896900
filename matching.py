"""
Rule matching for transactions.

Pure functions over immutable snapshots: no session, no writes. Rules are
loaded once per application run and frozen here so every transaction in the
batch is evaluated against the same rule set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Optional

from models import AmountOperator, MerchantMatchType, Rule, Transaction


@dataclass(frozen=True)
class TransactionSnapshot:
    id: str
    name: str
    merchant_name: Optional[str]
    amount_cents: int
    bank_account_id: Optional[str]
    date: date

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            name=txn.name,
            merchant_name=txn.merchant_name,
            amount_cents=txn.amount_cents,
            bank_account_id=txn.bank_account_id,
            date=txn.date,
        )


@dataclass(frozen=True)
class RuleCriteria:
    merchant_match: Optional[str] = None
    merchant_match_type: MerchantMatchType = MerchantMatchType.contains
    amount_operator: Optional[AmountOperator] = None
    amount_value_cents: Optional[int] = None
    amount_value_max_cents: Optional[int] = None
    account_id: Optional[str] = None
    date_start: Optional[date] = None
    date_end: Optional[date] = None


@dataclass(frozen=True)
class RuleActions:
    set_category_slug: Optional[str] = None
    set_merchant_name: Optional[str] = None
    # None leaves the flag alone, False clears it
    set_excluded: Optional[bool] = None
    set_assigned_id: Optional[str] = None
    set_deal_code: Optional[str] = None
    auto_resolve_deal: bool = False
    add_tag_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class RuleSnapshot:
    id: str
    name: str
    priority: int = 0
    created_at: Optional[datetime] = None
    criteria: RuleCriteria = field(default_factory=RuleCriteria)
    actions: RuleActions = field(default_factory=RuleActions)

    @classmethod
    def from_model(cls, rule: Rule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            name=rule.name,
            priority=rule.priority,
            created_at=rule.created_at,
            criteria=RuleCriteria(
                merchant_match=rule.merchant_match,
                merchant_match_type=rule.merchant_match_type,
                amount_operator=rule.amount_operator,
                amount_value_cents=rule.amount_value_cents,
                amount_value_max_cents=rule.amount_value_max_cents,
                account_id=rule.account_id,
                date_start=rule.date_start,
                date_end=rule.date_end,
            ),
            actions=RuleActions(
                set_category_slug=rule.set_category_slug,
                set_merchant_name=rule.set_merchant_name,
                set_excluded=rule.set_excluded,
                set_assigned_id=rule.set_assigned_id,
                set_deal_code=rule.set_deal_code,
                auto_resolve_deal=bool(rule.auto_resolve_deal),
                add_tag_ids=tuple(rule.add_tag_ids),
            ),
        )


def effective_merchant_text(txn: TransactionSnapshot) -> str:
    return txn.merchant_name or txn.name or ""


def _merchant_matches(txn: TransactionSnapshot, criteria: RuleCriteria) -> bool:
    target = effective_merchant_text(txn).lower()
    needle = criteria.merchant_match.lower()
    if criteria.merchant_match_type == MerchantMatchType.exact:
        return target == needle
    if criteria.merchant_match_type == MerchantMatchType.starts_with:
        return target.startswith(needle)
    return needle in target


def _amount_matches(txn: TransactionSnapshot, criteria: RuleCriteria) -> bool:
    amount = abs(txn.amount_cents)
    value = abs(criteria.amount_value_cents)
    operator = criteria.amount_operator
    if operator == AmountOperator.eq:
        return amount == value
    if operator == AmountOperator.gt:
        return amount > value
    if operator == AmountOperator.lt:
        return amount < value
    if operator == AmountOperator.between:
        if criteria.amount_value_max_cents is None:
            return False
        return value <= amount <= abs(criteria.amount_value_max_cents)
    return False


def matches(txn: TransactionSnapshot, criteria: RuleCriteria) -> bool:
    """
    Decide whether a transaction satisfies every criterion that is set.

    Criteria that are absent impose no constraint, so a rule without any
    criteria matches everything (the catch-all case).
    """
    if criteria.merchant_match:
        if not _merchant_matches(txn, criteria):
            return False

    if criteria.amount_operator is not None and criteria.amount_value_cents is not None:
        if not _amount_matches(txn, criteria):
            return False

    if criteria.account_id is not None:
        if txn.bank_account_id != criteria.account_id:
            return False

    if criteria.date_start is not None and txn.date < criteria.date_start:
        return False
    if criteria.date_end is not None and txn.date > criteria.date_end:
        return False

    return True


def evaluation_order(rules: Iterable[RuleSnapshot]) -> list[RuleSnapshot]:
    return sorted(
        rules,
        key=lambda r: (r.priority, r.created_at or datetime.min, r.id),
    )


def first_matching_rule(
    txn: TransactionSnapshot, rules: Iterable[RuleSnapshot]
) -> Optional[RuleSnapshot]:
    """Return the first rule, in the given order, whose criteria match."""
    for rule in rules:
        if matches(txn, rule.criteria):
            return rule
    return None
