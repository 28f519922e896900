from datetime import date

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import (
    AmountOperator,
    Deal,
    DealStatus,
    MatchStatus,
    Merchant,
    MerchantMatchType,
    Transaction,
    transaction_tags,
)
from schemas import RuleIn
from services import RuleApplicationService, RuleService, TagService
from stores import TransactionStore

TEAM = "team-a"
OTHER_TEAM = "team-b"


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _txn(session: Session, txn_id: str, name: str, amount_cents: int, **extra) -> Transaction:
    values = dict(
        id=txn_id,
        team_id=TEAM,
        date=date(2025, 3, 15),
        name=name,
        amount_cents=amount_cents,
    )
    values.update(extra)
    txn = Transaction(**values)
    session.add(txn)
    session.commit()
    return txn


def _reload(session: Session, txn_id: str) -> Transaction:
    session.expire_all()
    return session.get(Transaction, txn_id)


def test_contains_rule_sets_category() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(
                name="Uber is travel",
                merchant_match="uber",
                merchant_match_type=MerchantMatchType.contains,
                set_category_slug="travel",
            )
        )
        _txn(session, "tx-1", "UBER TRIP 482", -2350)

        result = RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        assert result.as_dict() == {"applied": 1}
        assert _reload(session, "tx-1").category_slug == "travel"


def test_higher_priority_rule_wins_and_stops_evaluation() -> None:
    with _session() as session:
        rules = RuleService(session, TEAM)
        big = rules.create(
            RuleIn(
                name="Large payments are internal",
                priority=0,
                amount_operator=AmountOperator.gt,
                amount_value_cents=100_000,
                set_excluded=True,
            )
        )
        rules.create(
            RuleIn(
                name="Everything else",
                priority=1,
                merchant_match="",
                set_category_slug="other",
            )
        )
        _txn(session, "tx-big", "WIRE TRANSFER", 150_000)
        _txn(session, "tx-small", "COFFEE", 450)

        result = RuleApplicationService(session, TEAM).apply_rules(
            ["tx-big", "tx-small"]
        )

        assert result.applied == 2
        assert result.matches["tx-big"] == big.id
        big_txn = _reload(session, "tx-big")
        assert big_txn.internal is True
        assert big_txn.category_slug is None
        small_txn = _reload(session, "tx-small")
        assert small_txn.internal is False
        assert small_txn.category_slug == "other"


def test_between_rule_only_matches_inside_range() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(
                name="Meals",
                amount_operator=AmountOperator.between,
                amount_value_cents=1000,
                amount_value_max_cents=5000,
                set_category_slug="meals",
            )
        )
        _txn(session, "tx-5", "LUNCH", -500)
        _txn(session, "tx-25", "LUNCH", -2500)
        _txn(session, "tx-75", "LUNCH", -7500)

        result = RuleApplicationService(session, TEAM).apply_rules(
            ["tx-5", "tx-25", "tx-75"]
        )

        assert result.applied == 1
        assert _reload(session, "tx-5").category_slug is None
        assert _reload(session, "tx-25").category_slug == "meals"
        assert _reload(session, "tx-75").category_slug is None


def test_auto_resolve_links_active_deal() -> None:
    with _session() as session:
        merchant = Merchant(team_id=TEAM, name="ACME CORP")
        session.add(merchant)
        session.flush()
        deal = Deal(
            team_id=TEAM,
            merchant_id=merchant.id,
            deal_code="DEAL-42",
            status=DealStatus.active,
        )
        session.add(deal)
        session.commit()

        RuleService(session, TEAM).create(
            RuleIn(name="Acme revenue", auto_resolve_deal=True, set_category_slug="revenue")
        )
        _txn(session, "tx-acme", "ACH CREDIT 0193", 120_000, merchant_name="Acme Corp")

        result = RuleApplicationService(session, TEAM).apply_rules(["tx-acme"])

        assert result.applied == 1
        txn = _reload(session, "tx-acme")
        assert txn.deal_code == "DEAL-42"
        assert txn.matched_deal_id == deal.id
        assert txn.match_status == MatchStatus.auto_matched
        assert txn.match_rule == "Acme revenue"
        assert txn.matched_at is not None
        assert txn.category_slug == "revenue"


def test_auto_resolve_without_active_deal_still_applies_other_actions() -> None:
    with _session() as session:
        merchant = Merchant(team_id=TEAM, name="Acme Corp")
        session.add(merchant)
        session.flush()
        session.add(
            Deal(
                team_id=TEAM,
                merchant_id=merchant.id,
                deal_code="DEAL-OLD",
                status=DealStatus.paid_off,
            )
        )
        session.commit()

        RuleService(session, TEAM).create(
            RuleIn(name="Acme", auto_resolve_deal=True, set_category_slug="revenue")
        )
        _txn(session, "tx-acme", "Acme Corp", 5000)
        _txn(session, "tx-unknown", "Globex", 5000)

        result = RuleApplicationService(session, TEAM).apply_rules(
            ["tx-acme", "tx-unknown"]
        )

        assert result.applied == 2
        for txn_id in ("tx-acme", "tx-unknown"):
            txn = _reload(session, txn_id)
            assert txn.category_slug == "revenue"
            assert txn.deal_code is None
            assert txn.match_status == MatchStatus.unmatched


def test_auto_resolve_requires_exact_merchant_name() -> None:
    with _session() as session:
        merchant = Merchant(team_id=TEAM, name="Acme")
        session.add(merchant)
        session.flush()
        session.add(Deal(team_id=TEAM, merchant_id=merchant.id, deal_code="DEAL-1"))
        session.commit()

        RuleService(session, TEAM).create(RuleIn(name="Acme", auto_resolve_deal=True))
        _txn(session, "tx-1", "Acme Corp", 5000)

        RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        assert _reload(session, "tx-1").deal_code is None


def test_auto_resolve_ignores_other_teams_merchants() -> None:
    with _session() as session:
        merchant = Merchant(team_id=OTHER_TEAM, name="Acme Corp")
        session.add(merchant)
        session.flush()
        session.add(
            Deal(team_id=OTHER_TEAM, merchant_id=merchant.id, deal_code="DEAL-B")
        )
        session.commit()

        RuleService(session, TEAM).create(RuleIn(name="Acme", auto_resolve_deal=True))
        _txn(session, "tx-1", "Acme Corp", 5000)

        RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        assert _reload(session, "tx-1").deal_code is None


class _BrokenResolver:
    def resolve(self, merchant_text: str):
        raise RuntimeError("merchant lookup unavailable")


def test_resolver_failure_is_treated_as_no_deal() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(name="Acme", auto_resolve_deal=True, set_category_slug="revenue")
        )
        _txn(session, "tx-1", "Acme Corp", 5000)
        _txn(session, "tx-2", "Acme Corp", 7000)

        result = RuleApplicationService(
            session, TEAM, deal_resolver=_BrokenResolver()
        ).apply_rules(["tx-1", "tx-2"])

        assert result.applied == 2
        assert result.failed_ids == []
        assert _reload(session, "tx-1").category_slug == "revenue"
        assert _reload(session, "tx-2").deal_code is None


def test_direct_deal_code_marks_transaction_matched() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(name="Funding wire", merchant_match="funding", set_deal_code="DEAL-7")
        )
        _txn(session, "tx-1", "FUNDING WIRE 88", 500_000)

        RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        txn = _reload(session, "tx-1")
        assert txn.deal_code == "DEAL-7"
        assert txn.match_status == MatchStatus.auto_matched
        assert txn.match_rule == "Funding wire"
        assert txn.matched_at is not None
        assert txn.matched_deal_id is None


def test_all_field_actions_apply_together() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(
                name="Payroll",
                merchant_match="gusto",
                merchant_match_type=MerchantMatchType.starts_with,
                set_category_slug="payroll",
                set_merchant_name="Gusto",
                set_excluded=False,
                set_assigned_id="user-9",
            )
        )
        _txn(session, "tx-1", "GUSTO PAYROLL 0412", -880_000, internal=True)

        RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        txn = _reload(session, "tx-1")
        assert txn.category_slug == "payroll"
        assert txn.merchant_name == "Gusto"
        assert txn.internal is False
        assert txn.assigned_id == "user-9"
        assert txn.match_status == MatchStatus.unmatched


def test_tagging_twice_keeps_one_link_per_tag() -> None:
    with _session() as session:
        tags = TagService(session, TEAM)
        tag_1 = tags.create("Streaming")
        tag_2 = tags.create("Personal")
        RuleService(session, TEAM).create(
            RuleIn(
                name="Netflix", merchant_match="netflix", add_tag_ids=[tag_1.id, tag_2.id]
            )
        )
        _txn(session, "tx-1", "NETFLIX.COM", -1599)

        first = RuleApplicationService(session, TEAM).apply_rules(["tx-1"])
        second = RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        assert first.applied == 1
        assert second.applied == 1
        links = session.execute(
            select(transaction_tags.c.tag_id).where(
                transaction_tags.c.transaction_id == "tx-1"
            )
        ).scalars().all()
        assert sorted(links) == sorted([tag_1.id, tag_2.id])
        assert {t.name for t in _reload(session, "tx-1").tags} == {"Streaming", "Personal"}


def test_other_teams_transactions_are_untouched() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(RuleIn(name="All", set_category_slug="mine"))
        _txn(session, "tx-mine", "COFFEE", 450)
        _txn(session, "tx-theirs", "COFFEE", 450, team_id=OTHER_TEAM)

        result = RuleApplicationService(session, TEAM).apply_rules(
            ["tx-mine", "tx-theirs", "tx-missing"]
        )

        assert result.applied == 1
        assert _reload(session, "tx-mine").category_slug == "mine"
        assert _reload(session, "tx-theirs").category_slug is None


def test_empty_input_applies_nothing() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(RuleIn(name="All", set_category_slug="x"))

        result = RuleApplicationService(session, TEAM).apply_rules([])

        assert result.as_dict() == {"applied": 0}


def test_no_enabled_rules_applies_nothing() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(name="Off", enabled=False, set_category_slug="x")
        )
        RuleService(session, OTHER_TEAM).create(RuleIn(name="Theirs", set_category_slug="x"))
        _txn(session, "tx-1", "COFFEE", 450)
        _txn(session, "tx-2", "TEA", 300)

        result = RuleApplicationService(session, TEAM).apply_rules(["tx-1", "tx-2"])

        assert result.applied == 0
        assert _reload(session, "tx-1").category_slug is None


def test_unmatched_transactions_are_not_counted() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(
            RuleIn(name="Uber", merchant_match="uber", set_category_slug="travel")
        )
        _txn(session, "tx-1", "UBER", 1000)
        _txn(session, "tx-2", "LYFT", 1000)

        result = RuleApplicationService(session, TEAM).apply_rules(["tx-1", "tx-2"])

        assert result.applied == 1
        assert set(result.matches) == {"tx-1"}
        assert _reload(session, "tx-2").category_slug is None


class _FailingStore(TransactionStore):
    def update(self, transaction_id, fields):
        if transaction_id == "tx-bad":
            raise OperationalError("UPDATE transactions", {}, Exception("disk I/O error"))
        return super().update(transaction_id, fields)


def test_failed_write_is_reported_and_batch_continues() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(RuleIn(name="All", set_category_slug="seen"))
        _txn(session, "tx-bad", "A", 100)
        _txn(session, "tx-good", "B", 100)

        service = RuleApplicationService(session, TEAM)
        service.applier.transactions = _FailingStore(session, TEAM)
        result = service.apply_rules(["tx-bad", "tx-good"])

        assert result.applied == 1
        assert result.failed_ids == ["tx-bad"]
        assert _reload(session, "tx-bad").category_slug is None
        assert _reload(session, "tx-good").category_slug == "seen"


def test_expired_deadline_stops_before_any_write() -> None:
    with _session() as session:
        RuleService(session, TEAM).create(RuleIn(name="All", set_category_slug="x"))
        _txn(session, "tx-1", "A", 100)

        result = RuleApplicationService(session, TEAM).apply_rules(
            ["tx-1"], timeout_secs=0
        )

        assert result.timed_out is True
        assert result.applied == 0
        assert _reload(session, "tx-1").category_slug is None


def test_preview_reports_matches_without_writing() -> None:
    with _session() as session:
        rule = RuleService(session, TEAM).create(
            RuleIn(name="Uber", merchant_match="uber", set_category_slug="travel")
        )
        _txn(session, "tx-1", "UBER", 1000)
        _txn(session, "tx-2", "LYFT", 1000)

        found = RuleApplicationService(session, TEAM).preview(["tx-1", "tx-2"])

        assert found == {"tx-1": rule.id}
        assert _reload(session, "tx-1").category_slug is None
        count = session.scalar(
            select(func.count()).select_from(Transaction).where(
                Transaction.category_slug.is_not(None)
            )
        )
        assert count == 0


def test_auto_resolve_matches_accented_merchant_names() -> None:
    with _session() as session:
        merchant = Merchant(team_id=TEAM, name="ÉCOLE ÖKO GMBH")
        session.add(merchant)
        session.flush()
        session.add(Deal(team_id=TEAM, merchant_id=merchant.id, deal_code="DEAL-U"))
        session.commit()

        RuleService(session, TEAM).create(RuleIn(name="School", auto_resolve_deal=True))
        _txn(session, "tx-1", "SEPA 7781", 9900, merchant_name="École Öko GmbH")

        result = RuleApplicationService(session, TEAM).apply_rules(["tx-1"])

        assert result.applied == 1
        assert merchant.name_lower == "école öko gmbh"
        assert _reload(session, "tx-1").deal_code == "DEAL-U"
