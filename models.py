import json
import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class MerchantMatchType(str, Enum):
    exact = "exact"
    starts_with = "starts_with"
    contains = "contains"


class AmountOperator(str, Enum):
    eq = "eq"
    gt = "gt"
    lt = "lt"
    between = "between"


class MatchStatus(str, Enum):
    unmatched = "unmatched"
    auto_matched = "auto_matched"
    suggested = "suggested"
    manual_matched = "manual_matched"
    flagged = "flagged"
    excluded = "excluded"


class DealStatus(str, Enum):
    active = "active"
    paid_off = "paid_off"
    defaulted = "defaulted"
    paused = "paused"
    late = "late"
    in_collections = "in_collections"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("team_id", "name", name="uq_tag_team_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    ),
    Column("team_id", String(36), nullable=False),
    Column("created_at", DateTime, default=datetime.utcnow, nullable=False),
    Index("ix_transaction_tags_team_tag", "team_id", "tag_id"),
)


class Merchant(Base, TimestampMixin):
    __tablename__ = "merchants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # lowercased in Python; SQLite lower() only folds ASCII
    name_lower: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (Index("ix_merchants_team_name_lower", "team_id", "name_lower"),)

    @validates("name")
    def _sync_name_lower(self, _key: str, name: str) -> str:
        self.name_lower = name.lower()
        return name


class Deal(Base, TimestampMixin):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    merchant_id: Mapped[str] = mapped_column(
        ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False
    )
    deal_code: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[DealStatus] = mapped_column(
        SAEnum(DealStatus), default=DealStatus.active, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("team_id", "deal_code", name="uq_deal_team_code"),
        Index("ix_deals_team_merchant_status", "team_id", "merchant_id", "status"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_account_id: Mapped[Optional[str]] = mapped_column(String(36))

    category_slug: Mapped[Optional[str]] = mapped_column(String(100))
    internal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    assigned_id: Mapped[Optional[str]] = mapped_column(String(36))

    deal_code: Mapped[Optional[str]] = mapped_column(String(64))
    match_status: Mapped[MatchStatus] = mapped_column(
        SAEnum(MatchStatus), default=MatchStatus.unmatched, nullable=False
    )
    matched_deal_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("deals.id", ondelete="SET NULL")
    )
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    match_rule: Mapped[Optional[str]] = mapped_column(String(120))

    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", viewonly=True
    )

    __table_args__ = (
        Index("ix_transactions_team_date", "team_id", "date"),
        Index("ix_transactions_team_category", "team_id", "category_slug"),
        Index("ix_transactions_match_status", "match_status"),
    )


class Rule(Base, TimestampMixin):
    __tablename__ = "transaction_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    merchant_match: Mapped[Optional[str]] = mapped_column(String(200))
    merchant_match_type: Mapped[MerchantMatchType] = mapped_column(
        SAEnum(MerchantMatchType), default=MerchantMatchType.contains, nullable=False
    )
    amount_operator: Mapped[Optional[AmountOperator]] = mapped_column(
        SAEnum(AmountOperator)
    )
    amount_value_cents: Mapped[Optional[int]] = mapped_column(Integer)
    amount_value_max_cents: Mapped[Optional[int]] = mapped_column(Integer)
    account_id: Mapped[Optional[str]] = mapped_column(String(36))
    date_start: Mapped[Optional[date]] = mapped_column(Date)
    date_end: Mapped[Optional[date]] = mapped_column(Date)

    set_category_slug: Mapped[Optional[str]] = mapped_column(String(100))
    set_merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    set_excluded: Mapped[Optional[bool]] = mapped_column(Boolean)
    set_assigned_id: Mapped[Optional[str]] = mapped_column(String(36))
    set_deal_code: Mapped[Optional[str]] = mapped_column(String(64))
    auto_resolve_deal: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    add_tag_ids_json: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index(
            "ix_transaction_rules_team_enabled_priority",
            "team_id",
            "enabled",
            "priority",
            "created_at",
        ),
        CheckConstraint(
            "amount_operator != 'between' OR amount_value_max_cents IS NOT NULL",
            name="ck_rule_between_has_max",
        ),
    )

    @property
    def add_tag_ids(self) -> list[str]:
        if not self.add_tag_ids_json:
            return []
        return [str(t) for t in json.loads(self.add_tag_ids_json)]

    @add_tag_ids.setter
    def add_tag_ids(self, tag_ids: list[str]) -> None:
        self.add_tag_ids_json = json.dumps(list(tag_ids)) if tag_ids else None
