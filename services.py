from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from matching import (
    RuleSnapshot,
    TransactionSnapshot,
    effective_merchant_text,
    evaluation_order,
    first_matching_rule,
)
from models import MatchStatus, Rule, Tag, transaction_tags
from schemas import RuleIn, RuleUpdate
from stores import DealLink, DealResolver, TagLinkStore, TransactionStore

logger = logging.getLogger(__name__)


class RuleNotFound(ValueError):
    pass


class TagService:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.team_id == self.team_id).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def create(self, name: str, color: Optional[str] = None) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(
            Tag.team_id == self.team_id, func.lower(Tag.name) == clean_name.lower()
        )
        if self.session.scalar(stmt):
            raise ValueError("Tag already exists")

        tag = Tag(team_id=self.team_id, name=clean_name, color=color)
        self.session.add(tag)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: str) -> None:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.team_id != self.team_id:
            raise ValueError("Tag not found")

        self.session.execute(
            delete(transaction_tags).where(
                transaction_tags.c.tag_id == tag.id,
                transaction_tags.c.team_id == self.team_id,
            )
        )
        rules = self.session.scalars(
            select(Rule).where(
                Rule.team_id == self.team_id, Rule.add_tag_ids_json.is_not(None)
            )
        ).all()
        for rule in rules:
            if tag.id in rule.add_tag_ids:
                rule.add_tag_ids = [t for t in rule.add_tag_ids if t != tag.id]
        self.session.delete(tag)
        self.session.commit()


class RuleService:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def _ordered(self):
        return (
            select(Rule)
            .where(Rule.team_id == self.team_id)
            .order_by(Rule.priority.asc(), Rule.created_at.asc(), Rule.id.asc())
        )

    def list_all(self) -> list[Rule]:
        return self.session.scalars(self._ordered()).all()

    def list_enabled_ordered(self) -> list[Rule]:
        stmt = self._ordered().where(Rule.enabled.is_(True))
        return self.session.scalars(stmt).all()

    def enabled_snapshots(self) -> list[RuleSnapshot]:
        return evaluation_order(
            RuleSnapshot.from_model(rule) for rule in self.list_enabled_ordered()
        )

    def _find(self, rule_id: str) -> Optional[Rule]:
        rule = self.session.get(Rule, rule_id)
        if not rule or rule.team_id != self.team_id:
            return None
        return rule

    def get(self, rule_id: str) -> Rule:
        rule = self._find(rule_id)
        if rule is None:
            raise RuleNotFound("Rule not found")
        return rule

    def _check_tags(self, tag_ids: list[str]) -> None:
        known = TagLinkStore(self.session, self.team_id).known_tag_ids(tag_ids)
        if len(known) != len(tag_ids):
            raise ValueError("Tag not found")

    @staticmethod
    def _assign(rule: Rule, data: RuleIn) -> None:
        rule.name = data.name
        rule.enabled = data.enabled
        rule.priority = data.priority
        rule.merchant_match = data.merchant_match
        rule.merchant_match_type = data.merchant_match_type
        rule.amount_operator = data.amount_operator
        rule.amount_value_cents = data.amount_value_cents
        rule.amount_value_max_cents = data.amount_value_max_cents
        rule.account_id = data.account_id
        rule.date_start = data.date_start
        rule.date_end = data.date_end
        rule.set_category_slug = data.set_category_slug
        rule.set_merchant_name = data.set_merchant_name
        rule.set_excluded = data.set_excluded
        rule.set_assigned_id = data.set_assigned_id
        rule.set_deal_code = data.set_deal_code
        rule.auto_resolve_deal = data.auto_resolve_deal
        rule.add_tag_ids = data.add_tag_ids

    def create(self, data: RuleIn) -> Rule:
        self._check_tags(data.add_tag_ids)

        rule = Rule(team_id=self.team_id)
        self._assign(rule, data)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        logger.info(f"rule_created: team={self.team_id} rule={rule.id}")
        return rule

    def update(self, rule_id: str, data: RuleUpdate) -> Optional[Rule]:
        rule = self._find(rule_id)
        if rule is None:
            return None

        current: dict[str, Any] = {
            name: getattr(rule, name) for name in RuleIn.model_fields
        }
        current.update(data.changes())
        merged = RuleIn.model_validate(current)
        self._check_tags(merged.add_tag_ids)

        self._assign(rule, merged)
        rule.updated_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle(self, rule_id: str, enabled: bool) -> Optional[Rule]:
        return self.update(rule_id, RuleUpdate(enabled=enabled))

    def delete(self, rule_id: str) -> Optional[Rule]:
        rule = self._find(rule_id)
        if rule is None:
            return None
        self.session.delete(rule)
        self.session.commit()
        logger.info(f"rule_deleted: team={self.team_id} rule={rule_id}")
        return rule


class ActionApplier:
    """Turns a matched rule's actions into one transaction update plus tag links."""

    def __init__(
        self,
        transactions: TransactionStore,
        tag_links: TagLinkStore,
        deal_resolver: Optional[DealResolver] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.transactions = transactions
        self.tag_links = tag_links
        self.deal_resolver = deal_resolver
        self.clock = clock

    def _resolve_deal(self, txn: TransactionSnapshot) -> Optional[DealLink]:
        text = effective_merchant_text(txn)
        if not text.strip() or self.deal_resolver is None:
            return None
        try:
            return self.deal_resolver.resolve(text)
        except Exception:
            logger.exception(f"deal_resolve_failed: transaction={txn.id}")
            return None

    def build_update(
        self, txn: TransactionSnapshot, rule: RuleSnapshot
    ) -> dict[str, Any]:
        actions = rule.actions
        fields: dict[str, Any] = {}

        if actions.set_category_slug is not None:
            fields["category_slug"] = actions.set_category_slug
        if actions.set_merchant_name is not None:
            fields["merchant_name"] = actions.set_merchant_name
        if actions.set_excluded is not None:
            fields["internal"] = actions.set_excluded
        if actions.set_assigned_id is not None:
            fields["assigned_id"] = actions.set_assigned_id

        if actions.set_deal_code is not None:
            fields["deal_code"] = actions.set_deal_code
            fields["match_status"] = MatchStatus.auto_matched
            fields["match_rule"] = rule.name
            fields["matched_at"] = self.clock()

        if actions.auto_resolve_deal:
            link = self._resolve_deal(txn)
            if link is not None:
                fields["deal_code"] = link.deal_code
                fields["matched_deal_id"] = link.deal_id
                fields["match_status"] = MatchStatus.auto_matched
                fields["match_rule"] = rule.name
                fields["matched_at"] = self.clock()

        return fields

    def apply(self, txn: TransactionSnapshot, rule: RuleSnapshot) -> dict[str, Any]:
        fields = self.build_update(txn, rule)
        self.transactions.update(txn.id, fields)

        if rule.actions.add_tag_ids:
            known = self.tag_links.known_tag_ids(rule.actions.add_tag_ids)
            if len(known) != len(rule.actions.add_tag_ids):
                logger.warning(
                    f"rule_unknown_tags: rule={rule.id} "
                    f"skipped={len(rule.actions.add_tag_ids) - len(known)}"
                )
            for tag_id in known:
                self.tag_links.insert(txn.id, tag_id)
        return fields


@dataclass
class ApplyResult:
    applied: int = 0
    failed_ids: list[str] = field(default_factory=list)
    timed_out: bool = False
    matches: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, int]:
        return {"applied": self.applied}


class RuleApplicationService:
    def __init__(
        self,
        session: Session,
        team_id: str,
        deal_resolver: Optional[DealResolver] = None,
    ) -> None:
        self.session = session
        self.team_id = team_id
        self.rules = RuleService(session, team_id)
        self.transactions = TransactionStore(session, team_id)
        self.applier = ActionApplier(
            self.transactions,
            TagLinkStore(session, team_id),
            deal_resolver or DealResolver.for_session(session, team_id),
        )

    def _load(
        self, transaction_ids: Iterable[str]
    ) -> tuple[list[RuleSnapshot], list[TransactionSnapshot]]:
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            return [], []
        rules = self.rules.enabled_snapshots()
        if not rules:
            return [], []
        return rules, self.transactions.fetch(ids)

    def preview(self, transaction_ids: Iterable[str]) -> dict[str, str]:
        """Map each transaction id to the id of the rule that would apply."""
        rules, transactions = self._load(transaction_ids)
        found: dict[str, str] = {}
        for txn in transactions:
            rule = first_matching_rule(txn, rules)
            if rule is not None:
                found[txn.id] = rule.id
        return found

    def apply_rules(
        self, transaction_ids: Iterable[str], *, timeout_secs: Optional[float] = None
    ) -> ApplyResult:
        """
        Apply the first matching enabled rule to each transaction.

        Each matched transaction is committed on its own, so work done before a
        failure or an expired deadline stays applied. Failed writes are rolled
        back, reported in ``failed_ids`` and not retried.
        """
        result = ApplyResult()
        rules, transactions = self._load(transaction_ids)
        if not transactions:
            return result

        if timeout_secs is None:
            timeout_secs = get_settings().apply_timeout_secs
        deadline = time.monotonic() + timeout_secs if timeout_secs is not None else None

        for txn in transactions:
            if deadline is not None and time.monotonic() >= deadline:
                result.timed_out = True
                logger.warning(
                    f"rules_apply_timeout: team={self.team_id} applied={result.applied}"
                )
                break

            rule = first_matching_rule(txn, rules)
            if rule is None:
                continue

            try:
                self.applier.apply(txn, rule)
                self.session.commit()
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception(
                    f"rule_apply_failed: team={self.team_id} transaction={txn.id} "
                    f"rule={rule.id}"
                )
                result.failed_ids.append(txn.id)
                continue

            result.applied += 1
            result.matches[txn.id] = rule.id

        logger.info(
            f"rules_applied: team={self.team_id} rules={len(rules)} "
            f"transactions={len(transactions)} applied={result.applied} "
            f"failed={len(result.failed_ids)}"
        )
        return result
