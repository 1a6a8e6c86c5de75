"""
SM-2 Spaced Repetition Scheduler.

Implements a SuperMemo-2 variant over persisted ReviewCards:
- Ease factor stored x1000 (2500 default, floor 1300)
- First attempt always schedules a next-day review
- Success: intervals 1, 6, then previous interval x ease
- Failure: repetitions and interval reset, ease unchanged

SM-2 Quality Scale:
0 - Complete blackout
1 - Incorrect, remembered on seeing the answer
2 - Incorrect, answer seemed easy to recall (any wrong UKMLA answer)
3 - Correct, with significant difficulty
4 - Correct, with some hesitation
5 - Correct, with perfect recall (any right UKMLA answer)
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from medrev.db.models import ReviewCard


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (banker's rounding is not wanted)."""
    return math.floor(value + 0.5)


def quality_from_score(score: int) -> int:
    """Map a case score onto the 0-5 quality scale."""
    if score > 20:
        return 5
    if score > 10:
        return 4
    if score > 0:
        return 3
    if score > -10:
        return 2
    if score > -20:
        return 1
    return 0


def quality_from_correctness(is_correct: bool) -> int:
    return 5 if is_correct else 2


@dataclass
class SM2Config:
    """Configuration for the SM-2 variant."""

    initial_ease: int = 2500
    minimum_ease: int = 1300
    first_interval: int = 1  # Days for first successful review
    second_interval: int = 6  # Days for second successful review
    passing_quality: int = 3


@dataclass
class SM2State:
    repetitions: int
    ease_factor: int
    interval: int


class SM2Scheduler:
    """Pure SM-2 state transitions (no persistence)."""

    def __init__(self, config: SM2Config | None = None):
        self.config = config or SM2Config()

    def initial_state(self) -> SM2State:
        return SM2State(repetitions=0, ease_factor=self.config.initial_ease, interval=1)

    def next_state(self, state: SM2State, quality: int) -> SM2State:
        """
        Apply one graded review.

        The interval multiplies by the ease factor held before this review;
        the ease update only affects later intervals.
        """
        if quality < self.config.passing_quality:
            return SM2State(repetitions=0, ease_factor=state.ease_factor, interval=1)

        repetitions = state.repetitions + 1
        if repetitions == 1:
            interval = self.config.first_interval
        elif repetitions == 2:
            interval = self.config.second_interval
        else:
            interval = max(1, round_half_up(state.interval * state.ease_factor / 1000))

        lapse = 5 - quality
        ease_delta = 100 * (3.6 - lapse * (0.08 + lapse * 0.02))
        ease_factor = max(self.config.minimum_ease, round_half_up(state.ease_factor + ease_delta))

        return SM2State(repetitions=repetitions, ease_factor=ease_factor, interval=interval)


class ReviewScheduler:
    """
    Owns ReviewCard rows for one session.

    Callers serialise concurrent attempts by the same learner (the engine
    holds a per-user lock for the whole transaction); the row read also
    takes FOR UPDATE where the dialect supports it.
    """

    def __init__(
        self,
        session: Session,
        clock: Callable[[], datetime],
        sm2: SM2Scheduler | None = None,
    ):
        self.session = session
        self.clock = clock
        self.sm2 = sm2 or SM2Scheduler()

    def get_card(self, user_id: str, item_kind: str, item_id: int) -> ReviewCard | None:
        return self.session.execute(
            select(ReviewCard)
            .where(
                ReviewCard.user_id == user_id,
                ReviewCard.item_kind == item_kind,
                ReviewCard.item_id == item_id,
            )
            .with_for_update()
        ).scalar_one_or_none()

    def record_outcome(self, user_id: str, item_kind: str, item_id: int, quality: int) -> ReviewCard:
        """
        Record one genuine attempt and reschedule the item.

        No de-duplication happens here; every call is a review event.
        """
        now = self.clock()
        card = self.get_card(user_id, item_kind, item_id)

        if card is None:
            state = self.sm2.initial_state()
            card = ReviewCard(
                user_id=user_id,
                item_kind=item_kind,
                item_id=item_id,
                repetitions=state.repetitions,
                ease_factor=state.ease_factor,
                interval=state.interval,
            )
            self.session.add(card)
        else:
            state = self.sm2.next_state(
                SM2State(card.repetitions, card.ease_factor, card.interval), quality
            )
            card.repetitions = state.repetitions
            card.ease_factor = state.ease_factor
            card.interval = state.interval

        card.last_reviewed_at = now
        card.next_review_date = now + timedelta(days=card.interval)
        self.session.flush()

        logger.debug(
            "Recorded review for {} {}:{}: quality={}, reps={}, ef={}, interval={}d",
            user_id,
            item_kind,
            item_id,
            quality,
            card.repetitions,
            card.ease_factor,
            card.interval,
        )
        return card

    def due_items(self, user_id: str, limit: int = 50) -> list[ReviewCard]:
        """Cards due now or earlier, most overdue first."""
        return list(
            self.session.execute(
                select(ReviewCard)
                .where(ReviewCard.user_id == user_id, ReviewCard.next_review_date <= self.clock())
                .order_by(ReviewCard.next_review_date.asc(), ReviewCard.id.asc())
                .limit(limit)
            ).scalars()
        )

    def due_count(self, user_id: str) -> int:
        return self.session.execute(
            select(func.count(ReviewCard.id)).where(
                ReviewCard.user_id == user_id, ReviewCard.next_review_date <= self.clock()
            )
        ).scalar_one()
