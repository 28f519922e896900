from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from matching import TransactionSnapshot
from models import Deal, DealStatus, Merchant, Tag, Transaction, transaction_tags

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit.
FETCH_CHUNK_SIZE = 500


@dataclass(frozen=True)
class DealLink:
    deal_id: str
    deal_code: str
    merchant_id: str


class TransactionStore:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def fetch(self, transaction_ids: Iterable[str]) -> list[TransactionSnapshot]:
        ids = list(dict.fromkeys(transaction_ids))
        snapshots: list[TransactionSnapshot] = []
        for start in range(0, len(ids), FETCH_CHUNK_SIZE):
            chunk = ids[start : start + FETCH_CHUNK_SIZE]
            stmt = (
                select(Transaction)
                .where(Transaction.team_id == self.team_id, Transaction.id.in_(chunk))
                .order_by(Transaction.date, Transaction.id)
            )
            snapshots.extend(
                TransactionSnapshot.from_model(txn)
                for txn in self.session.scalars(stmt).all()
            )
        return snapshots

    def update(self, transaction_id: str, fields: dict[str, Any]) -> int:
        if not fields:
            return 0
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.team_id == self.team_id)
            .values(**fields)
            .execution_options(synchronize_session="fetch")
        )
        return self.session.execute(stmt).rowcount


class MerchantStore:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def find_by_name(self, lowercased_name: str) -> Optional[Merchant]:
        stmt = (
            select(Merchant)
            .where(
                Merchant.team_id == self.team_id,
                Merchant.name_lower == lowercased_name,
            )
            .order_by(Merchant.created_at.asc(), Merchant.id.asc())
            .limit(1)
        )
        return self.session.scalar(stmt)


class DealStore:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def find_active_by_merchant(self, merchant_id: str) -> Optional[Deal]:
        stmt = (
            select(Deal)
            .where(
                Deal.team_id == self.team_id,
                Deal.merchant_id == merchant_id,
                Deal.status == DealStatus.active,
            )
            .order_by(Deal.created_at.desc(), Deal.id.asc())
            .limit(1)
        )
        return self.session.scalar(stmt)


def conflict_ignoring_insert(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert(transaction_tags)
    if dialect_name == "sqlite":
        return sqlite.insert(transaction_tags)
    raise ValueError(f"Tag links need ON CONFLICT support, got dialect {dialect_name}")


class TagLinkStore:
    def __init__(self, session: Session, team_id: str) -> None:
        self.session = session
        self.team_id = team_id

    def known_tag_ids(self, tag_ids: Iterable[str]) -> list[str]:
        wanted = list(dict.fromkeys(tag_ids))
        if not wanted:
            return []
        stmt = select(Tag.id).where(Tag.team_id == self.team_id, Tag.id.in_(wanted))
        found = set(self.session.scalars(stmt).all())
        return [tag_id for tag_id in wanted if tag_id in found]

    def insert(self, transaction_id: str, tag_id: str) -> None:
        """Link a tag to a transaction; an existing link is left as is."""
        values = {
            "transaction_id": transaction_id,
            "tag_id": tag_id,
            "team_id": self.team_id,
        }
        dialect = self.session.get_bind().dialect.name
        stmt = conflict_ignoring_insert(dialect).values(**values)
        self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["transaction_id", "tag_id"])
        )


class DealResolver:
    """Resolves free merchant text to the merchant's active deal, if any."""

    def __init__(self, merchants: MerchantStore, deals: DealStore) -> None:
        self.merchants = merchants
        self.deals = deals

    @classmethod
    def for_session(cls, session: Session, team_id: str) -> "DealResolver":
        return cls(MerchantStore(session, team_id), DealStore(session, team_id))

    def resolve(self, merchant_text: str) -> Optional[DealLink]:
        name = (merchant_text or "").strip().lower()
        if not name:
            return None
        merchant = self.merchants.find_by_name(name)
        if not merchant:
            return None
        deal = self.deals.find_active_by_merchant(merchant.id)
        if not deal:
            logger.debug(f"deal_resolve_miss: merchant_id={merchant.id}")
            return None
        return DealLink(deal_id=deal.id, deal_code=deal.deal_code, merchant_id=merchant.id)
