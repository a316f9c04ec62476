from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class PositionStatus(str, Enum):
    PENDING_ENTRY = "PENDING_ENTRY"
    OPEN = "OPEN"
    PENDING_EXIT = "PENDING_EXIT"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


ACTIVE_STATUSES = (PositionStatus.PENDING_ENTRY, PositionStatus.OPEN, PositionStatus.PENDING_EXIT)


class VenueKind(str, Enum):
    DIRECT_POOL = "DIRECT_POOL"      # bonding-curve pool the token launched on
    MIGRATED_POOL = "MIGRATED_POOL"  # constant-product pool the curve graduated into
    AGGREGATOR = "AGGREGATOR"        # routed swap (Jupiter)


class SafetyStrategy(str, Enum):
    LOCAL = "LOCAL"
    EXTERNAL = "EXTERNAL"


class SwapDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class AttemptOutcome(str, Enum):
    LANDED = "LANDED"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    REJECTED = "REJECTED"
    MIGRATED = "MIGRATED"
    ERROR = "ERROR"


@dataclass
class Position:
    mint: str
    pool_address: str = ""
    venue: VenueKind = VenueKind.MIGRATED_POOL
    status: PositionStatus = PositionStatus.PENDING_ENTRY
    entry_time: float = field(default_factory=time.time)
    entry_price_base: float = 0.0
    entry_amount_base: float = 0.0
    token_amount: Optional[int] = None
    entry_signature: Optional[str] = None
    exit_signature: Optional[str] = None
    exit_reason: Optional[str] = None
    manual_intervention: bool = False
    paper: bool = False
    creator: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def held_seconds(self, now: Optional[float] = None) -> float:
        return (now or time.time()) - self.entry_time


@dataclass(frozen=True)
class SafetyVerdict:
    is_safe: bool
    reason: Optional[str] = None

    @classmethod
    def safe(cls) -> "SafetyVerdict":
        return cls(True, None)

    @classmethod
    def unsafe(cls, reason: str) -> "SafetyVerdict":
        return cls(False, reason)


@dataclass
class SubmissionAttempt:
    """One try to land a transaction. Lives only inside a retry loop."""
    venue: VenueKind
    route: str  # relay url or "direct-rpc"
    priority_fee: int
    signature: Optional[str] = None
    outcome: AttemptOutcome = AttemptOutcome.ERROR
    error: Optional[str] = None

    def summary(self) -> str:
        sig = self.signature[:12] if self.signature else "-"
        line = f"{self.venue.value} fee={self.priority_fee} route={self.route or '-'} sig={sig} {self.outcome.value}"
        return f"{line} ({self.error})" if self.error else line


@dataclass
class RelayEndpoint:
    url: str
    client: Any
    last_latency_ms: Optional[float] = None
    last_failure: Optional[str] = None
    last_checked: float = 0.0

    def record_success(self, latency_ms: float) -> None:
        self.last_latency_ms = latency_ms
        self.last_failure = None
        self.last_checked = time.time()

    def record_failure(self, error: str) -> None:
        self.last_failure = error
        self.last_checked = time.time()


@dataclass(frozen=True)
class ExitTriggerConfig:
    """Per-position trigger parameters, frozen at open time."""
    target_progress_threshold: Optional[float]
    max_hold_seconds: float
    liquidity_spike_absolute: int  # lamports
    initial_liquidity_snapshot: int  # lamports
    stop_loss_pct: Optional[float] = None


@dataclass
class DetectionEvent:
    signature: str
    logs: list[str] = field(default_factory=list)
    received_at: float = field(default_factory=time.time)


@dataclass
class TokenBalance:
    account_index: int
    mint: str
    owner: Optional[str]
    amount: int
    decimals: int


@dataclass
class TransactionDetails:
    signature: str
    account_keys: list[str]
    pre_balances: list[int] = field(default_factory=list)
    post_balances: list[int] = field(default_factory=list)
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)
    log_messages: list[str] = field(default_factory=list)
    err: Any = None

    @property
    def fee_payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None


@dataclass
class AccountSnapshot:
    address: str
    owner: str
    data: bytes
    lamports: int = 0


@dataclass
class EntryCandidate:
    mint: str
    pool_address: str
    signature: str
    creator: Optional[str] = None
    liquidity_lamports: int = 0
    entry_price_base: float = 0.0
