from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from runic_market.reputation import ReputationPolicy
from runic_market.scoring import ScoringWeights

DEFAULT_AUCTION_WINDOW_MS = 15_000


def repo_root() -> Path:
    # Project root is the directory that contains the `runic_market/` package.
    return Path(__file__).resolve().parents[1]


def load_env() -> None:
    # Prefer a project-local `.env` so the CLI behaves the same from any working
    # directory. Fall back to searching from CWD.
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class MarketSettings:
    auction_window_ms: int = DEFAULT_AUCTION_WINDOW_MS
    scoring: ScoringWeights = field(default_factory=ScoringWeights)
    reputation: ReputationPolicy = field(default_factory=ReputationPolicy)
    token_symbol: str = "SOL"
    log_level: str = "INFO"
    payment_ledger_path: Path | None = None


def load_settings() -> MarketSettings:
    load_env()
    default_rep = ReputationPolicy()
    default_weights = ScoringWeights()

    decay = _env_float("RUNIC_REPUTATION_DECAY", default_rep.decay_factor)
    if not (0.0 < decay <= 1.0):
        raise ValueError(f"RUNIC_REPUTATION_DECAY must be in (0, 1], got {decay}")

    ledger_raw = (os.getenv("RUNIC_PAYMENT_LEDGER_PATH") or "").strip()
    return MarketSettings(
        auction_window_ms=_env_int(
            "RUNIC_AUCTION_WINDOW_MS", DEFAULT_AUCTION_WINDOW_MS, minimum=1
        ),
        scoring=ScoringWeights(
            base=_env_float("RUNIC_SCORE_BASE", default_weights.base),
            alpha=_env_float("RUNIC_SCORE_ALPHA", default_weights.alpha),
            beta=_env_float("RUNIC_SCORE_BETA", default_weights.beta),
            gamma=_env_float("RUNIC_SCORE_GAMMA", default_weights.gamma),
        ),
        reputation=ReputationPolicy(
            window=_env_int("RUNIC_REPUTATION_WINDOW", default_rep.window, minimum=1),
            decay_factor=decay,
        ),
        token_symbol=(os.getenv("RUNIC_TOKEN_SYMBOL") or "SOL").strip() or "SOL",
        log_level=(os.getenv("RUNIC_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        payment_ledger_path=Path(ledger_raw).expanduser() if ledger_raw else None,
    )
