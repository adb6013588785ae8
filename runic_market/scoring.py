from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from runic_market.schemas import Offer


@dataclass(frozen=True)
class ScoringWeights:
    base: float = 100.0
    alpha: float = 1.0  # price
    beta: float = 0.5  # eta
    gamma: float = 1.0  # reputation


def _r3(v: float) -> float:
    return round(float(v), 3)


def score_offer_breakdown(
    *,
    price: int | float,
    eta_seconds: int | float,
    reputation: float,
    weights: ScoringWeights,
) -> dict[str, float]:
    # Inputs are assumed valid (price > 0, eta > 0); callers validate before scoring.
    price_term = weights.alpha * math.log(float(price) + 1.0)
    eta_term = weights.beta * math.log(float(eta_seconds) + 1.0)
    reputation_term = weights.gamma * float(reputation)
    score = weights.base - price_term - eta_term + reputation_term
    return {
        "base": float(weights.base),
        "price": float(price),
        "eta_seconds": float(eta_seconds),
        "reputation": float(reputation),
        "price_term": float(price_term),
        "eta_term": float(eta_term),
        "reputation_term": float(reputation_term),
        "score": _r3(score),
    }


def score_offer(
    *,
    price: int | float,
    eta_seconds: int | float,
    reputation: float,
    weights: ScoringWeights,
) -> float:
    return float(
        score_offer_breakdown(
            price=price, eta_seconds=eta_seconds, reputation=reputation, weights=weights
        )["score"]
    )


@dataclass(frozen=True)
class OfferScorer:
    """score = base - alpha*ln(price+1) - beta*ln(eta+1) + gamma*reputation, to 3 decimals."""

    weights: ScoringWeights = field(default_factory=ScoringWeights)

    def score(self, *, price: int | float, eta_seconds: int | float, reputation: float) -> float:
        return score_offer(
            price=price, eta_seconds=eta_seconds, reputation=reputation, weights=self.weights
        )

    def breakdown(
        self, *, price: int | float, eta_seconds: int | float, reputation: float
    ) -> dict[str, float]:
        return score_offer_breakdown(
            price=price, eta_seconds=eta_seconds, reputation=reputation, weights=self.weights
        )


def offer_rank_key(offer: Offer) -> tuple[float, float, str]:
    # Highest score first; equal scores go to the earliest submission, then the
    # lowest offer id so the order never depends on storage iteration order.
    return (-_r3(offer.score), offer.created_at.timestamp(), offer.id)


def rank_offers(offers: Iterable[Offer]) -> list[Offer]:
    return sorted(offers, key=offer_rank_key)


def select_winner(offers: Iterable[Offer]) -> Offer | None:
    ranked = rank_offers(offers)
    return ranked[0] if ranked else None
