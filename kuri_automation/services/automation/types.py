"""
Types for raffle and subscription automation.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence


class KuriState(IntEnum):
    """Lifecycle state of a market, as stored on-chain."""
    IN_LAUNCH = 0
    ACTIVE = 1
    COMPLETED = 2


def state_name(value: int) -> str:
    try:
        return KuriState(value).name
    except ValueError:
        return f"UNKNOWN({value})"


@dataclass(frozen=True)
class MarketSnapshot:
    """Decoded ``kuriData()`` plus the elapsed interval counter of one market."""
    address: str
    creator: str
    kuri_amount: int
    total_participants: int
    total_active_participants: int
    interval_duration: int
    next_raffle_time: int
    next_deposit_time: int
    launch_period: int
    start_time: int
    end_time: int
    interval_type: int
    state: int
    current_interval: int

    @classmethod
    def from_kuri_data(cls, address: str, raw: Sequence[Any], current_interval: int) -> "MarketSnapshot":
        if len(raw) < 12:
            raise ValueError(f"kuriData returned {len(raw)} fields, expected 12")
        (
            creator,
            kuri_amount,
            total_participants,
            total_active_participants,
            interval_duration,
            next_raffle_time,
            next_deposit_time,
            launch_period,
            start_time,
            end_time,
            interval_type,
            state,
        ) = raw[:12]
        return cls(
            address=address,
            creator=str(creator),
            kuri_amount=int(kuri_amount),
            total_participants=int(total_participants),
            total_active_participants=int(total_active_participants),
            interval_duration=int(interval_duration),
            next_raffle_time=int(next_raffle_time),
            next_deposit_time=int(next_deposit_time),
            launch_period=int(launch_period),
            start_time=int(start_time),
            end_time=int(end_time),
            interval_type=int(interval_type),
            state=int(state),
            current_interval=int(current_interval),
        )

    @property
    def is_active(self) -> bool:
        return self.state == KuriState.ACTIVE

    @property
    def state_label(self) -> str:
        return state_name(self.state)


@dataclass(frozen=True)
class SubscriptionInfo:
    """Decoded ``getSubscription(subId)`` result from the VRF coordinator."""
    balance: int
    native_balance: int
    request_count: int
    owner: str
    consumers: List[str]

    @classmethod
    def from_raw(cls, raw: Sequence[Any]) -> "SubscriptionInfo":
        if len(raw) < 5:
            raise ValueError(f"getSubscription returned {len(raw)} fields, expected 5")
        balance, native_balance, request_count, owner, consumers = raw[:5]
        return cls(
            balance=int(balance),
            native_balance=int(native_balance),
            request_count=int(request_count),
            owner=str(owner),
            consumers=[str(c) for c in consumers],
        )


@dataclass(frozen=True)
class TransactionReceiptInfo:
    """The parts of a transaction receipt the agent acts on."""
    tx_hash: str
    succeeded: bool
    block_number: int
    gas_used: int

    @property
    def status(self) -> str:
        return "success" if self.succeeded else "reverted"


class TxStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TxAction(str, Enum):
    RAFFLE = "raffle"
    FUNDING = "funding"


@dataclass
class TransactionStatus:
    """Supervisor record for one submitted transaction."""
    tx_hash: str
    market_address: str
    action: TxAction = TxAction.RAFFLE
    status: TxStatus = TxStatus.PENDING
    retries: int = 0
    error: Optional[str] = None
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    gas_used: Optional[int] = None
    resubmitted: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status == TxStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.tx_hash,
            "market_address": self.market_address,
            "action": self.action.value,
            "status": self.status.value,
            "retries": self.retries,
            "error": self.error,
            "submitted_at": self.submitted_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "gas_used": self.gas_used,
        }


class RaffleOutcome(Enum):
    """Result of one market's raffle check."""
    SUBMITTED = "submitted"
    NOT_ACTIVE = "not_active"
    NOT_DUE = "not_due"
    UNPAID = "unpaid"
    ALREADY_DRAWN = "already_drawn"
    COOLDOWN = "cooldown"
    READ_FAILED = "read_failed"
    SIMULATION_FAILED = "simulation_failed"
    FAILED = "failed"


@dataclass
class RaffleCheckResult:
    market_address: str
    outcome: RaffleOutcome
    tx_hash: Optional[str] = None
    detail: str = ""


class FundingOutcome(Enum):
    """Result of one subscription's funding check."""
    ALREADY_FUNDED = "already_funded"
    SUFFICIENT = "sufficient"
    FUNDED = "funded"
    VERIFICATION_FAILED = "verification_failed"
    TX_FAILED = "tx_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    READ_FAILED = "read_failed"
    FAILED = "failed"


@dataclass
class FundingResult:
    subscription_id: str
    outcome: FundingOutcome
    tx_hash: Optional[str] = None
    detail: str = ""


@dataclass
class BatchStats:
    """Outcome counts for one orchestrator invocation."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    items_found: int = 0
    aborted: bool = False
    error: Optional[str] = None
    outcomes: Dict[str, int] = field(default_factory=dict)

    def record(self, outcome: Enum):
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def count(self, outcome: Enum) -> int:
        return self.outcomes.get(outcome.value, 0)

    @property
    def duration(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


@dataclass
class RaffleBatchStats(BatchStats):
    results: List[RaffleCheckResult] = field(default_factory=list)

    @property
    def submitted(self) -> int:
        return self.count(RaffleOutcome.SUBMITTED)


@dataclass
class FundingBatchStats(BatchStats):
    results: List[FundingResult] = field(default_factory=list)

    @property
    def funded(self) -> int:
        return self.count(FundingOutcome.FUNDED)
