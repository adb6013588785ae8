from __future__ import annotations

from datetime import UTC, datetime, timedelta

from runic_market.schemas import Offer
from runic_market.scoring import OfferScorer, ScoringWeights, rank_offers, select_winner

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _offer(offer_id: str, score: float, *, seconds: int = 0) -> Offer:
    return Offer(
        id=offer_id,
        task_id="T1",
        agent_id=f"agent-{offer_id}",
        price=10,
        eta_seconds=60,
        score=score,
        created_at=T0 + timedelta(seconds=seconds),
    )


def test_score_formula_rounds_to_three_decimals() -> None:
    scorer = OfferScorer()
    # 100 - ln(11) - 0.5*ln(61) + 3.0
    assert scorer.score(price=10, eta_seconds=60, reputation=3.0) == 98.547


def test_breakdown_exposes_terms() -> None:
    b = OfferScorer().breakdown(price=10, eta_seconds=60, reputation=3.0)
    assert b["score"] == 98.547
    assert b["reputation_term"] == 3.0
    assert round(b["price_term"], 4) == 2.3979
    assert round(b["eta_term"], 4) == 2.0554


def test_minor_unit_prices_stay_positive() -> None:
    # 100 - ln(1_000_001) - 0.5*ln(3601) + 3.0
    assert OfferScorer().score(price=1_000_000, eta_seconds=3600, reputation=3.0) == 85.09


def test_score_monotonicity() -> None:
    scorer = OfferScorer()
    base = scorer.score(price=50, eta_seconds=600, reputation=3.0)
    assert scorer.score(price=40, eta_seconds=600, reputation=3.0) > base
    assert scorer.score(price=50, eta_seconds=300, reputation=3.0) > base
    assert scorer.score(price=50, eta_seconds=600, reputation=3.5) > base


def test_custom_weights_apply() -> None:
    scorer = OfferScorer(ScoringWeights(base=0.0, alpha=0.0, beta=0.0, gamma=2.0))
    assert scorer.score(price=999, eta_seconds=999, reputation=2.5) == 5.0


def test_highest_score_wins() -> None:
    offers = [_offer("a", 10.0), _offer("b", 12.5, seconds=1), _offer("c", 9.0, seconds=2)]
    ranked = rank_offers(offers)
    assert [o.id for o in ranked] == ["b", "a", "c"]
    assert select_winner(offers).id == "b"


def test_ties_go_to_earliest_then_lowest_id() -> None:
    late = _offer("a", 7.0, seconds=5)
    early = _offer("z", 7.0, seconds=1)
    assert select_winner([late, early]).id == "z"

    same_time_1 = _offer("m", 7.0, seconds=3)
    same_time_2 = _offer("k", 7.0, seconds=3)
    assert select_winner([same_time_1, same_time_2]).id == "k"


def test_select_winner_of_nothing_is_none() -> None:
    assert select_winner([]) is None
