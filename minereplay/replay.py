from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, List, Optional
import asyncio

from .game_engine import ConfigError, Engine
from .records import GameRecord, Move, RevealResult


class ReplayMismatchError(ValueError):
    """A stored record disagrees with what its own mine layout produces."""

    def __init__(self, code: str, move: Optional[Move] = None, actual: Optional[str] = None) -> None:
        super().__init__(code)
        self.code = code
        self.move = move
        self.actual = actual


@dataclass(frozen=True)
class ReplayStep:
    move: Move
    result: RevealResult

    def to_dict(self):
        return {"move": self.move.to_dict(), **self.result.to_dict()}


def reconstruct(record: GameRecord) -> Engine:
    """Build an engine pinned to the record's layout with no moves applied."""
    try:
        engine = Engine(record.size, record.mines_count)
    except ConfigError as e:
        raise ReplayMismatchError("invalid_record_config", actual=str(e)) from e
    # abandoned before the first reveal: mines were never placed
    if not record.mine_layout and not record.moves:
        return engine
    try:
        engine.pin_mines(record.mine_layout)
    except ValueError as e:
        raise ReplayMismatchError("mine_layout_mismatch", actual=str(e)) from e
    return engine


_EXPECTED_STATUS = {"win": "won", "lose": "lost"}


class ReplaySession:
    """Re-applies a stored move list to a reconstructed engine.

    Moves can be applied one at a time (``step``), all at once (``run``) or
    with a delay between them (``paced``). The resulting board is the same
    in every case.
    """

    def __init__(self, record: GameRecord) -> None:
        self.record = record
        self.engine = reconstruct(record)
        self._moves: List[Move] = list(record.moves)
        self._index = 0
        self.cancelled = False

    @property
    def done(self) -> bool:
        return self.cancelled or self._index >= len(self._moves)

    @property
    def position(self) -> int:
        return self._index

    def cancel(self) -> None:
        self.cancelled = True

    def step(self) -> ReplayStep:
        if self.done:
            raise IndexError("no moves left to replay")
        move = self._moves[self._index]
        if move.move_number != self._index + 1:
            raise ReplayMismatchError("move_sequence_gap", move=move)
        result = self.engine.reveal(move.x, move.y)
        if result.outcome != move.outcome:
            raise ReplayMismatchError("outcome_mismatch", move=move, actual=result.outcome)
        self._index += 1
        return ReplayStep(move, result)

    def verify_final_result(self) -> None:
        expected = _EXPECTED_STATUS.get(self.record.final_result)
        if expected is None:
            if self.engine.game_over:
                raise ReplayMismatchError("final_result_mismatch", actual=self.engine.status)
        elif self.engine.status != expected:
            raise ReplayMismatchError("final_result_mismatch", actual=self.engine.status)

    def run(self) -> Engine:
        while not self.done:
            self.step()
        if not self.cancelled:
            self.verify_final_result()
        return self.engine

    async def paced(self, delay: float) -> AsyncIterator[ReplayStep]:
        while not self.done:
            yield self.step()
            if self.done:
                break
            await asyncio.sleep(delay)
        if not self.cancelled:
            self.verify_final_result()


def replay_game(record: GameRecord) -> Engine:
    return ReplaySession(record).run()
