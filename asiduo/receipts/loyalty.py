"""Loyalty engine: advance every active program of a merchant for one purchase."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from .db.ports import ProgressStore
from .errors import InvariantViolation
from .models import (
    HistoryEntry,
    LoyaltyProgram,
    ProgramProgress,
    ProgramResult,
    ProgramType,
    Purchase,
    Redemption,
    RewardTier,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class _Outcome:
    eligible: bool
    increment: int = 0
    points: int = 0
    reason: str = ""
    detail: dict[str, Any] = field(default_factory=dict)


def _keywords(program: LoyaltyProgram) -> list[str]:
    raw = program.config.get("product_keywords", [])
    if isinstance(raw, str):
        raw = raw.split(",")
    return [k.strip() for k in raw if k and k.strip()]


def _visits(program: LoyaltyProgram, purchase: Purchase) -> _Outcome:
    return _Outcome(eligible=True, increment=1, reason="visita registrada")


def _specific_product(program: LoyaltyProgram, purchase: Purchase) -> _Outcome:
    haystacks = [purchase.raw_text.lower()]
    haystacks.extend(item.description.lower() for item in purchase.line_items)
    for keyword in _keywords(program):
        needle = keyword.lower()
        if any(needle in text for text in haystacks):
            return _Outcome(
                eligible=True,
                increment=1,
                reason=f"producto encontrado: {keyword}",
                detail={"product": keyword},
            )
    return _Outcome(eligible=False, reason="producto no encontrado en el comprobante")


def _ticket_value(program: LoyaltyProgram, purchase: Purchase) -> _Outcome:
    minimum = Decimal(str(program.config.get("min_ticket_value", 0)))
    if purchase.amount >= minimum:
        return _Outcome(
            eligible=True,
            increment=1,
            reason=f"monto S/ {purchase.amount} >= S/ {minimum}",
            detail={"min_ticket_value": str(minimum)},
        )
    return _Outcome(eligible=False, reason=f"monto menor a S/ {minimum}")


def _points(program: LoyaltyProgram, purchase: Purchase) -> _Outcome:
    rate = Decimal(str(program.config.get("points_per_dollar", 1)))
    points = math.floor(purchase.amount * rate)
    if points < 0:
        raise InvariantViolation(
            f"Puntos negativos ({points}) para la compra {purchase.id} "
            f"en el programa {program.id}"
        )
    if points == 0:
        return _Outcome(eligible=False, reason="monto insuficiente para acumular puntos")
    return _Outcome(
        eligible=True,
        points=points,
        reason=f"{points} puntos",
        detail={"points_per_dollar": str(rate)},
    )


_EVALUATORS: dict[ProgramType, Callable[[LoyaltyProgram, Purchase], _Outcome]] = {
    ProgramType.VISITS: _visits,
    ProgramType.SPECIFIC_PRODUCT: _specific_product,
    ProgramType.TICKET_VALUE: _ticket_value,
    ProgramType.POINTS: _points,
}


def available_rewards(program: LoyaltyProgram, points: int) -> list[RewardTier]:
    return [tier for tier in program.reward_tiers if tier.points <= points]


def _snapshot(program: LoyaltyProgram, progress: ProgramProgress, **kwargs: Any) -> ProgramResult:
    is_points = program.type == ProgramType.POINTS
    return ProgramResult(
        program_id=program.id,
        program_type=program.type,
        program_name=program.name,
        can_redeem=progress.can_redeem,
        progress=progress.current_points if is_points else progress.current_count,
        target=None if is_points else program.target,
        total_points=progress.current_points,
        available_rewards=available_rewards(program, progress.current_points) if is_points else [],
        **kwargs,
    )


class LoyaltyEngine:
    """Evaluate loyalty programs against committed purchases."""

    def __init__(self, store: ProgressStore, now: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._now = now

    def active_programs(self, merchant_slug: str) -> list[LoyaltyProgram]:
        now = self._now()
        programs = [p for p in self._store.list_programs(merchant_slug) if p.is_valid_at(now)]
        return sorted(programs, key=lambda p: p.priority)

    def evaluate(
        self, merchant_slug: str, customer_id: str, purchase: Purchase
    ) -> list[ProgramResult]:
        """Credit one purchase to every active program of the merchant.

        A purchase that was fully evaluated before returns an empty list. An
        unexpected failure in one program is reported in that program's
        ``error`` and the others still run.

        Raises:
            InvariantViolation: A program produced an impossible state.
        """
        if self._store.is_ticket_processed(customer_id, purchase.id):
            logger.info(
                "Comprobante %s ya procesado en fidelidad para %s", purchase.id, customer_id
            )
            return []

        results: list[ProgramResult] = []
        for program in self.active_programs(merchant_slug):
            try:
                result = self._evaluate_program(program, customer_id, purchase)
            except InvariantViolation:
                raise
            except Exception as exc:
                logger.exception(
                    "Error evaluando el programa %s para %s", program.id, customer_id
                )
                result = ProgramResult(
                    program_id=program.id,
                    program_type=program.type,
                    program_name=program.name,
                    error=str(exc),
                )
            results.append(result)
            if result.eligible and not result.already_credited:
                self._update_stats(program, result, purchase)

        if not any(r.error for r in results):
            self._store.mark_ticket_processed(
                customer_id, purchase.id, merchant_slug, [r.to_dict() for r in results]
            )
        return results

    def _evaluate_program(
        self, program: LoyaltyProgram, customer_id: str, purchase: Purchase
    ) -> ProgramResult:
        progress = self._store.get_progress(customer_id, program.merchant_slug, program.id)
        if progress is None:
            progress = ProgramProgress(
                customer_id=customer_id,
                merchant_slug=program.merchant_slug,
                program_id=program.id,
                type=program.type,
                target=program.target,
            )

        if progress.has_ticket(purchase.id):
            return _snapshot(
                program, progress, eligible=True, already_credited=True, reason="ya acreditado"
            )

        if program.type != ProgramType.POINTS and program.target is None:
            raise ValueError(f"El programa {program.id} no tiene meta configurada")

        outcome = _EVALUATORS[program.type](program, purchase)
        if not outcome.eligible:
            return _snapshot(program, progress, eligible=False, reason=outcome.reason)

        was_redeemable = progress.can_redeem
        new_participant = progress.is_new

        if program.type == ProgramType.POINTS:
            progress.current_points += outcome.points
            progress.total_points_earned += outcome.points
            progress.can_redeem = bool(available_rewards(program, progress.current_points))
        else:
            progress.current_count += outcome.increment
            progress.target = program.target
            progress.can_redeem = progress.current_count >= program.target

        progress.append(
            HistoryEntry(
                ticket_id=purchase.id,
                at=self._now(),
                entity_id=purchase.entity_id,
                increment=outcome.increment,
                points_earned=outcome.points,
                detail=outcome.detail,
            )
        )
        self._store.save_progress(progress)

        became = progress.can_redeem and not was_redeemable
        if became:
            logger.info(
                "Premio disponible: %s en %s (%s)", customer_id, program.id, program.name
            )
        return _snapshot(
            program,
            progress,
            eligible=True,
            became_redeemable=became,
            points_earned=outcome.points,
            reason=outcome.reason,
            new_participant=new_participant,
        )

    def _update_stats(
        self, program: LoyaltyProgram, result: ProgramResult, purchase: Purchase
    ) -> None:
        try:
            self._store.add_program_stats(
                program.id,
                participants=1 if result.new_participant else 0,
                rewards_redeemed=1 if result.became_redeemable else 0,
                revenue=purchase.amount,
            )
        except Exception as exc:
            logger.warning("No se actualizaron estadísticas de %s: %s", program.id, exc)

    def redeem(
        self,
        customer_id: str,
        merchant_slug: str,
        program_id: str,
        reward: str | None = None,
    ) -> ProgramProgress:
        """Redeem a reward: reset the count, or deduct the tier's points.

        Raises:
            ValueError: Unknown program, or nothing redeemable.
        """
        program = self._store.get_program(program_id)
        progress = self._store.get_progress(customer_id, merchant_slug, program_id)
        if program is None or progress is None:
            raise ValueError(f"Sin progreso en el programa {program_id} para {customer_id}")
        if not progress.can_redeem:
            raise ValueError(f"{customer_id} aún no puede canjear en {program_id}")

        now = self._now()
        if program.type == ProgramType.POINTS:
            tiers = available_rewards(program, progress.current_points)
            if reward is not None:
                tiers = [t for t in tiers if t.reward == reward]
            if not tiers:
                raise ValueError(f"Premio no disponible: {reward}")
            tier = tiers[0]
            progress.current_points -= tier.points
            progress.redemptions.append(
                Redemption(reward=tier.reward, at=now, points_spent=tier.points)
            )
            progress.can_redeem = bool(available_rewards(program, progress.current_points))
        else:
            progress.redemptions.append(
                Redemption(
                    reward=reward or program.config.get("reward", program.name),
                    at=now,
                    count_spent=progress.current_count,
                )
            )
            progress.current_count = 0
            progress.can_redeem = False

        self._store.save_progress(progress)
        logger.info("Canje registrado: %s en %s", customer_id, program_id)
        return progress
