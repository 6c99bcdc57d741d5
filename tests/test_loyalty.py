"""Tests for the loyalty engine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from asiduo.receipts.errors import InvariantViolation
from asiduo.receipts.loyalty import LoyaltyEngine
from asiduo.receipts.models import (
    LineItem,
    LoyaltyProgram,
    ProgramStatus,
    ProgramType,
    Purchase,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
CUSTOMER = "+51987654321"
SLUG = "el-trigal"


def _purchase(pid: str, amount: str = "4.90", raw_text: str = "", items=None) -> Purchase:
    return Purchase(
        id=pid,
        customer_id=CUSTOMER,
        merchant_slug=SLUG,
        amount=Decimal(amount),
        entity_id="trigal-sac",
        created_at=NOW,
        raw_text=raw_text,
        line_items=items or [],
    )


def _program(pid: str, ptype: ProgramType, config: dict, **kwargs) -> LoyaltyProgram:
    return LoyaltyProgram(
        id=pid, merchant_slug=SLUG, type=ptype, name=kwargs.pop("name", pid), config=config, **kwargs
    )


@pytest.fixture
def engine(stores):
    return LoyaltyEngine(stores.loyalty, now=lambda: NOW)


class TestVisits:
    def test_redeemable_exactly_on_target(self, stores, engine):
        stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 10}))

        became = []
        for n in range(1, 12):
            [result] = engine.evaluate(SLUG, CUSTOMER, _purchase(f"p{n}"))
            became.append(result.became_redeemable)
            assert result.progress == n

        assert became == [False] * 9 + [True, False]

    def test_re_evaluation_returns_empty(self, stores, engine):
        stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 10}))
        purchase = _purchase("p1")

        assert len(engine.evaluate(SLUG, CUSTOMER, purchase)) == 1
        assert engine.evaluate(SLUG, CUSTOMER, purchase) == []
        progress = stores.loyalty.get_progress(CUSTOMER, SLUG, "visitas")
        assert progress.current_count == 1
        assert len(progress.history) == 1

    def test_missing_target_is_reported_per_program(self, stores, engine):
        stores.loyalty.save_program(_program("sin-meta", ProgramType.VISITS, {}, priority=0))
        stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 5}, priority=1))
        purchase = _purchase("p1")

        results = engine.evaluate(SLUG, CUSTOMER, purchase)

        by_id = {r.program_id: r for r in results}
        assert by_id["sin-meta"].error
        assert by_id["visitas"].eligible and by_id["visitas"].progress == 1
        assert not stores.loyalty.is_ticket_processed(CUSTOMER, "p1")

        # The retry does not credit the healthy program twice
        retry = {r.program_id: r for r in engine.evaluate(SLUG, CUSTOMER, purchase)}
        assert retry["visitas"].already_credited
        assert retry["visitas"].progress == 1


class TestPoints:
    REWARDS = {
        "points_per_dollar": 1,
        "rewards": [{"points": 40, "reward": "Torta"}, {"points": 30, "reward": "Café"}],
    }

    def test_floor_points_and_tiers(self, stores, engine):
        stores.loyalty.save_program(_program("puntos", ProgramType.POINTS, self.REWARDS))

        [result] = engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "35.40"))

        assert result.points_earned == 35
        assert result.total_points == 35
        assert [r.reward for r in result.available_rewards] == ["Café"]
        assert result.can_redeem and result.became_redeemable

    def test_zero_points_not_eligible(self, stores, engine):
        stores.loyalty.save_program(_program("puntos", ProgramType.POINTS, self.REWARDS))
        [result] = engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "0.50"))
        assert not result.eligible
        assert stores.loyalty.get_progress(CUSTOMER, SLUG, "puntos") is None

    def test_negative_points_raise(self, stores, engine):
        stores.loyalty.save_program(
            _program("puntos", ProgramType.POINTS, {"points_per_dollar": -1})
        )
        with pytest.raises(InvariantViolation):
            engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "5.00"))

    def test_redeem_deducts_tier(self, stores, engine):
        stores.loyalty.save_program(_program("puntos", ProgramType.POINTS, self.REWARDS))
        engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "35.40"))

        progress = engine.redeem(CUSTOMER, SLUG, "puntos", "Café")

        assert progress.current_points == 5
        assert progress.total_points_earned == 35
        assert not progress.can_redeem
        assert progress.redemptions[0].points_spent == 30


class TestSpecificProduct:
    CONFIG = {"target": 5, "product_keywords": ["baguette"]}

    def test_keyword_in_line_items(self, stores, engine):
        stores.loyalty.save_program(_program("baguettes", ProgramType.SPECIFIC_PRODUCT, self.CONFIG))
        purchase = _purchase("p1", items=[LineItem(description="BAGUETTE FRANCES")])

        [result] = engine.evaluate(SLUG, CUSTOMER, purchase)

        assert result.eligible
        assert result.progress == 1

    def test_keyword_in_raw_text(self, stores, engine):
        stores.loyalty.save_program(_program("baguettes", ProgramType.SPECIFIC_PRODUCT, self.CONFIG))
        [result] = engine.evaluate(SLUG, CUSTOMER, _purchase("p1", raw_text="1 BAGUETTE FRANCES 2.50"))
        assert result.eligible

    def test_missing_keyword_writes_nothing(self, stores, engine):
        stores.loyalty.save_program(_program("baguettes", ProgramType.SPECIFIC_PRODUCT, self.CONFIG))

        [result] = engine.evaluate(SLUG, CUSTOMER, _purchase("p1", raw_text="PAN CIABATTA"))

        assert result.eligible is False
        assert stores.loyalty.get_progress(CUSTOMER, SLUG, "baguettes") is None


class TestTicketValue:
    def test_minimum_amount(self, stores, engine):
        stores.loyalty.save_program(
            _program("ticket", ProgramType.TICKET_VALUE, {"target": 3, "min_ticket_value": 20})
        )
        [low] = engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "19.99"))
        [high] = engine.evaluate(SLUG, CUSTOMER, _purchase("p2", "20.00"))

        assert not low.eligible
        assert high.eligible and high.progress == 1


class TestProgramSelection:
    def test_paused_and_expired_programs_are_skipped(self, stores, engine):
        stores.loyalty.save_program(
            _program("pausado", ProgramType.VISITS, {"target": 5}, status=ProgramStatus.PAUSED)
        )
        stores.loyalty.save_program(
            _program("vencido", ProgramType.VISITS, {"target": 5}, valid_to=NOW - timedelta(days=1))
        )
        assert engine.evaluate(SLUG, CUSTOMER, _purchase("p1")) == []

    def test_stats_are_updated(self, stores, engine):
        stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 1}))

        engine.evaluate(SLUG, CUSTOMER, _purchase("p1", "4.90"))

        stats = stores.loyalty.get_program("visitas").stats
        assert stats["total_participants"] == 1
        assert stats["rewards_redeemed"] == 1
        assert stats["total_revenue"] == Decimal("4.90")


def test_redeem_resets_count(stores, engine):
    stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 2}))
    engine.evaluate(SLUG, CUSTOMER, _purchase("p1"))
    engine.evaluate(SLUG, CUSTOMER, _purchase("p2"))

    progress = engine.redeem(CUSTOMER, SLUG, "visitas")

    assert progress.current_count == 0
    assert not progress.can_redeem
    assert progress.redemptions[0].count_spent == 2


def test_redeem_before_target_fails(stores, engine):
    stores.loyalty.save_program(_program("visitas", ProgramType.VISITS, {"target": 2}))
    engine.evaluate(SLUG, CUSTOMER, _purchase("p1"))
    with pytest.raises(ValueError):
        engine.redeem(CUSTOMER, SLUG, "visitas")
