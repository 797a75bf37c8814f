"""Cross-validation of materialized balances against the chain.

Produces an accuracy class from the supply deviation and a composite 0-100
health score that deducts, each with its own cap, for duplicates, gaps and
supply deviation.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from tokensync.models.contract import ContractType
from tokensync.services.gap_detector import GapDetector

logger = structlog.get_logger()

DUPLICATE_PENALTY_CAP = 20
GAP_PENALTY_CAP = 30
SUPPLY_PENALTY_CAP = 50


class Accuracy(str, Enum):
    PERFECT = "perfect"
    GOOD = "good"
    NEEDS_ATTENTION = "needs_attention"
    CRITICAL = "critical"


def classify_accuracy(diff_percent: float) -> Accuracy:
    """perfect at 0, good below 0.5%, needs_attention below 5%, else critical."""
    if diff_percent == 0:
        return Accuracy.PERFECT
    if diff_percent < 0.5:
        return Accuracy.GOOD
    if diff_percent < 5:
        return Accuracy.NEEDS_ATTENTION
    return Accuracy.CRITICAL


def supply_diff_percent(onchain_supply: int, db_supply: int) -> float:
    if onchain_supply == 0:
        return 0.0 if db_supply == 0 else 100.0
    return abs(onchain_supply - db_supply) / onchain_supply * 100


def health_score(duplicates: int, gaps: int, diff_percent: float) -> int:
    """Composite 0-100 score.

    Deductions: duplicates / 10 (max 20), gaps * 5 (max 30),
    diff_percent * 10 (max 50).
    """
    score = (
        100
        - min(DUPLICATE_PENALTY_CAP, duplicates / 10)
        - min(GAP_PENALTY_CAP, gaps * 5)
        - min(SUPPLY_PENALTY_CAP, diff_percent * 10)
    )
    return max(0, math.floor(score + 0.5))


@dataclass(frozen=True)
class ValidationReport:
    contract_address: str
    contract_type: ContractType
    onchain_supply: int | None
    db_supply: int
    diff_percent: float
    accuracy: Accuracy
    duplicates: int
    gaps: int
    holders: int
    unique_tokens: int
    health_score: int


class CrossValidator:
    """Compares stored state for a contract with live on-chain reads."""

    def __init__(self, uow_factory, rpc: Any, gap_detector: GapDetector):
        self.uow_factory = uow_factory
        self.rpc = rpc
        self.gap_detector = gap_detector

    async def verify(
        self, contract_address: str, contract_type: ContractType
    ) -> ValidationReport:
        """Build a validation report from current_state, events and ``totalSupply()``.

        ERC-1155 has no universal on-chain aggregate, so its accuracy is
        derived from the gap count instead (good without gaps,
        needs_attention otherwise). The same applies to ERC-721 contracts
        that do not implement ``totalSupply()``.
        """
        contract = contract_address.lower()
        async with await self.uow_factory() as uow:
            totals = await uow.balances.get_totals(contract)
            duplicate_groups = await uow.events.find_duplicates(contract)
        duplicates = sum(group.count - 1 for group in duplicate_groups)

        gap_report = await self.gap_detector.find_gaps(contract)
        gaps = gap_report.total_gaps

        onchain_supply: int | None = None
        if contract_type == ContractType.ERC721:
            onchain_supply = await self.rpc.total_supply(contract)

        if onchain_supply is None:
            diff_percent = 0.0
            accuracy = Accuracy.GOOD if gaps == 0 else Accuracy.NEEDS_ATTENTION
        else:
            diff_percent = supply_diff_percent(onchain_supply, totals.total_supply)
            accuracy = classify_accuracy(diff_percent)

        report = ValidationReport(
            contract_address=contract,
            contract_type=contract_type,
            onchain_supply=onchain_supply,
            db_supply=totals.total_supply,
            diff_percent=round(diff_percent, 4),
            accuracy=accuracy,
            duplicates=duplicates,
            gaps=gaps,
            holders=totals.holders,
            unique_tokens=totals.unique_tokens,
            health_score=health_score(duplicates, gaps, diff_percent),
        )

        log = logger.info if accuracy in (Accuracy.PERFECT, Accuracy.GOOD) else logger.warning
        log(
            "validator.completed",
            contract=contract,
            accuracy=accuracy.value,
            health_score=report.health_score,
            onchain_supply=onchain_supply,
            db_supply=str(totals.total_supply),
            diff_percent=report.diff_percent,
            duplicates=duplicates,
            gaps=gaps,
        )
        return report
