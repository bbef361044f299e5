# engine.py
"""Round scheduler and scoring state machine for the arithmetic trivia bot.

Everything in here is transport-agnostic: the chat layer feeds messages in
through ``RoundScheduler.on_chat_message`` and a ``RoundWorker`` polls
``RoundScheduler.tick`` and hands the resulting announcements to a send
coroutine.
"""
import asyncio
import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)

# ------- Tunables -------
WORKER_POLLING_PERIOD = 0.05  # seconds between two ticks of the worker
OPERAND_RANGE = (2, 10)
ADDEND_RANGE = (2, 97)
GENERATION_TRIES = 1000
# -------------------------

ANSWER_PATTERN = re.compile(r"[+-]?[0-9]+")
ANSWER_MIN, ANSWER_MAX = -2 ** 63, 2 ** 63 - 1  # signed 64-bit range


@dataclass
class RoundConfig:
    min_cooldown: float = 45.0
    max_cooldown: float = 180.0
    round_time: float = 15.0

    def __post_init__(self) -> None:
        if self.min_cooldown <= 0:
            raise ValueError("min_cooldown must be positive")
        if self.max_cooldown < self.min_cooldown:
            raise ValueError("max_cooldown must not be less than min_cooldown")
        if self.round_time <= 0:
            raise ValueError("round_time must be positive")


@dataclass
class Contestant:
    nickname: str
    points: int = 0
    point_delta: int = 0  # gained or lost in the current round


class ScoreBoard:
    """Cumulative points of everyone who has ever answered, keyed by nickname."""

    def __init__(self) -> None:
        self._contestants: Dict[str, Contestant] = {}

    def get_or_create(self, nickname: str) -> Contestant:
        contestant = self._contestants.get(nickname)
        if contestant is None:
            contestant = Contestant(nickname)
            self._contestants[nickname] = contestant
        return contestant

    def get(self, nickname: str) -> Optional[Contestant]:
        return self._contestants.get(nickname)

    def apply_pending(self, nickname: str) -> Contestant:
        # point_delta is left alone; it is reset on the next participation
        contestant = self.get_or_create(nickname)
        contestant.points += contestant.point_delta
        return contestant

    def leaderboard(self, limit: int = 10) -> List[Tuple[str, int]]:
        rows = sorted(self._contestants.values(), key=lambda c: (-c.points, c.nickname))
        return [(c.nickname, c.points) for c in rows[:limit]]

    def __contains__(self, nickname: object) -> bool:
        return nickname in self._contestants

    def __len__(self) -> int:
        return len(self._contestants)


def generate_question(previous_answer: str, rng=random, tries: int = GENERATION_TRIES) -> Tuple[str, str]:
    """
    Draw ``a * b + c`` and return ``(question, answer)``.

    The answer is redrawn while it equals ``previous_answer`` so two
    consecutive rounds never share an answer. The question text itself may
    still repeat.
    """
    question, answer = "", previous_answer
    for _ in range(tries):
        a = rng.randint(*OPERAND_RANGE)
        b = rng.randint(*OPERAND_RANGE)
        c = rng.randint(*ADDEND_RANGE)
        question = f"What is {a} * {b} + {c}?"
        answer = str(a * b + c)
        if answer != previous_answer:
            return question, answer
    logger.warning("could not draw an answer different from %s in %d tries", previous_answer, tries)
    return question, answer


def is_answer_attempt(text: str) -> bool:
    if ANSWER_PATTERN.fullmatch(text) is None:
        return False
    return ANSWER_MIN <= int(text) <= ANSWER_MAX


class MessageBuilder:
    @staticmethod
    def loser_entry(contestant: Contestant) -> str:
        return f"{contestant.nickname} ({contestant.point_delta} -> {contestant.points})"

    @staticmethod
    def results(winner: Optional[Contestant], losers: List[Contestant]) -> str:
        losers_text = ", ".join(MessageBuilder.loser_entry(c) for c in losers)
        if winner is None:
            text = "No winners this round"
            if losers_text:
                text += f", only losers 😢 {losers_text}"
        else:
            unit = "point" if winner.points == 1 else "points"
            text = f"Congratulations, {winner.nickname}! (now at {winner.points} {unit})"
            if losers_text:
                text += f" 😞 {losers_text}"
        return text + "."


class RoundScheduler:
    """
    Owns the timing and scoring state of one channel.

    Every public method holds ``self._lock`` for its whole body, and none of
    them perform I/O: ``tick`` hands back the text to announce so the caller
    can send it with the lock released.
    """

    def __init__(self, config: RoundConfig, rng: Optional[random.Random] = None,
                 scoreboard: Optional[ScoreBoard] = None) -> None:
        self.config = config
        self.rng = rng if rng is not None else random.Random()
        self.scoreboard = scoreboard if scoreboard is not None else ScoreBoard()
        self._lock = threading.Lock()
        self._answer = ""
        self._round_open = False
        self._scored = True
        self._participants: set = set()
        self._winner: Optional[str] = None
        self._next_question_time = float("inf")
        self._scoring_deadline = float("inf")

    # ----- read accessors -----
    @property
    def answer(self) -> str:
        with self._lock:
            return self._answer

    @property
    def round_open(self) -> bool:
        with self._lock:
            return self._round_open

    @property
    def scored(self) -> bool:
        with self._lock:
            return self._scored

    @property
    def winner(self) -> Optional[str]:
        with self._lock:
            return self._winner

    @property
    def participants(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._participants)

    @property
    def next_question_time(self) -> float:
        with self._lock:
            return self._next_question_time

    @property
    def scoring_deadline(self) -> float:
        with self._lock:
            return self._scoring_deadline

    def points_of(self, nickname: str) -> int:
        with self._lock:
            contestant = self.scoreboard.get(nickname)
            return contestant.points if contestant else 0

    def leaderboard(self, limit: int = 10) -> List[Tuple[str, int]]:
        with self._lock:
            return self.scoreboard.leaderboard(limit)

    # ----- transitions -----
    def start(self, now: float) -> None:
        """Schedule the first question for ``now``."""
        with self._lock:
            self._next_question_time = now

    def tick(self, now: float) -> Optional[str]:
        with self._lock:
            if now >= self._next_question_time:
                return self._start_new_round()
            elif now >= self._scoring_deadline and not self._scored:
                return self._score_round()
        return None

    def on_chat_message(self, nickname: str, text: str) -> bool:
        """Score ``text`` if it is an answer to the open question; return whether it counted."""
        if not is_answer_attempt(text):
            return False
        with self._lock:
            if not self._round_open:
                return False
            contestant = self.scoreboard.get_or_create(nickname)
            if nickname not in self._participants:
                self._participants.add(nickname)
                contestant.point_delta = 0
            if text == self._answer:
                logger.debug("Winner: %s", nickname)
                self._winner = nickname
                self._round_open = False
                contestant.point_delta += 1
            else:
                logger.debug("Loser: %s", nickname)
                contestant.point_delta -= 1
            return True

    # lock held by caller
    def _start_new_round(self) -> str:
        self._participants.clear()
        self._winner = None
        question, self._answer = generate_question(self._answer, self.rng)
        self._round_open = True
        self._scored = False
        self._scoring_deadline = self._next_question_time + self.config.round_time
        self._next_question_time += self.rng.uniform(self.config.min_cooldown, self.config.max_cooldown)
        logger.info("asking %r (answer %s), scoring at %.2f", question, self._answer, self._scoring_deadline)
        return question

    # lock held by caller
    def _score_round(self) -> str:
        self._round_open = False
        self._scored = True
        winner: Optional[Contestant] = None
        losers: List[Contestant] = []
        for nickname in sorted(self._participants):
            contestant = self.scoreboard.apply_pending(nickname)
            if nickname == self._winner:
                winner = contestant
            else:
                losers.append(contestant)
        logger.info("round scored: winner=%s participants=%d", self._winner, len(self._participants))
        return MessageBuilder.results(winner, losers)


SendFunc = Callable[[str], Awaitable[None]]


class RoundWorker:
    """
    Timer actor: polls ``scheduler.tick`` every ``period`` seconds and sends
    whatever it returns.

    ``stop()`` wakes the worker and waits for it to exit, so no tick runs
    after it returns.
    """

    def __init__(self, scheduler: RoundScheduler, send: SendFunc,
                 clock: Callable[[], float] = time.monotonic,
                 period: float = WORKER_POLLING_PERIOD) -> None:
        self.scheduler = scheduler
        self.send = send
        self.clock = clock
        self.period = period
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        # each run owns its event so a restart cannot un-stop an exiting run
        self._stop_event = asyncio.Event()
        self.scheduler.start(self.clock())
        self._task = asyncio.create_task(self._run(self._stop_event))
        logger.info("round worker started")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        stop_event, self._stop_event = self._stop_event, None
        stop_event.set()
        await task
        logger.info("round worker stopped")

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.period)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                return
            announcement = self.scheduler.tick(self.clock())
            if announcement is None:
                continue
            try:
                await self.send(announcement)
            except Exception:
                logger.exception("failed to send %r", announcement)
