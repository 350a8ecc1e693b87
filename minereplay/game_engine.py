from __future__ import annotations

from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Set, Tuple
import random

from .records import (
    EXPLODED,
    INVALID,
    NO_MINE,
    RESULT_IN_PROGRESS,
    RESULT_LOSE,
    RESULT_WIN,
    WON,
    GameRecord,
    Move,
    RevealedCell,
    RevealResult,
)


MINE = -1

NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
STATUS_WON = "won"
STATUS_LOST = "lost"

PLACEMENT_ATTEMPTS_PER_MINE = 1000


class ConfigError(ValueError):
    pass


class PlacementError(ValueError):
    pass


def _neighbors(x: int, y: int, size: int) -> Iterator[Tuple[int, int]]:
    for nx in range(max(0, x - 1), min(size, x + 2)):
        for ny in range(max(0, y - 1), min(size, y + 2)):
            if nx == x and ny == y:
                continue
            yield nx, ny


def _safe_zone(x: int, y: int, size: int) -> Set[Tuple[int, int]]:
    zone = {(x, y)}
    zone.update(_neighbors(x, y, size))
    return zone


def _validate_config(size: int, mines_count: int) -> None:
    if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
        raise ConfigError("invalid_board_size")
    if not isinstance(mines_count, int) or isinstance(mines_count, bool) or mines_count <= 0:
        raise ConfigError("invalid_mine_count")
    if mines_count >= size * size:
        raise ConfigError("too_many_mines_for_board")


class Engine:
    """Square minesweeper board with deferred mine placement.

    Mines are laid out on the first ``reveal`` so that the clicked cell and
    its eight neighbours are always safe. Every ``reveal`` that changes the
    board appends exactly one ``Move`` to the log; flag toggles are not
    logged. Once the game is won or lost every action is a no-op.
    """

    def __init__(
        self,
        size: int,
        mines_count: int,
        rng_seed: int | None = None,
        max_placement_attempts: int | None = None,
    ) -> None:
        _validate_config(size, mines_count)
        self.size = size
        self.mines_count = mines_count
        self.board: List[List[int]] = [[0] * size for _ in range(size)]
        self.revealed: List[List[bool]] = [[False] * size for _ in range(size)]
        self.flagged: List[List[bool]] = [[False] * size for _ in range(size)]
        self.first_click = True
        self.status = NOT_STARTED
        if max_placement_attempts is None:
            max_placement_attempts = PLACEMENT_ATTEMPTS_PER_MINE * mines_count
        self.max_placement_attempts = max_placement_attempts
        self._rng = random.Random(rng_seed)
        self._mines: List[Tuple[int, int]] = []
        self._moves: List[Move] = []
        # safe cells only; an exploded mine is not counted
        self._revealed_count = 0

    # read-only views

    @property
    def mines(self) -> Tuple[Tuple[int, int], ...]:
        return tuple(self._mines)

    @property
    def moves(self) -> Tuple[Move, ...]:
        return tuple(self._moves)

    @property
    def game_over(self) -> bool:
        return self.status in (STATUS_WON, STATUS_LOST)

    @property
    def game_won(self) -> bool:
        return self.status == STATUS_WON

    @property
    def revealed_count(self) -> int:
        return sum(row.count(True) for row in self.revealed)

    @property
    def flag_count(self) -> int:
        return sum(row.count(True) for row in self.flagged)

    def cell_value(self, x: int, y: int) -> int:
        self.check_bounds(x, y)
        return self.board[x][y]

    def is_revealed(self, x: int, y: int) -> bool:
        self.check_bounds(x, y)
        return self.revealed[x][y]

    def is_flagged(self, x: int, y: int) -> bool:
        self.check_bounds(x, y)
        return self.flagged[x][y]

    def check_win(self) -> bool:
        return self._revealed_count == self.size * self.size - self.mines_count

    # mine layout

    def _count_adjacent_mines(self, x: int, y: int) -> int:
        return sum(1 for nx, ny in _neighbors(x, y, self.size) if self.board[nx][ny] == MINE)

    def _commit_layout(self, layout: Iterable[Tuple[int, int]]) -> None:
        self.board = [[0] * self.size for _ in range(self.size)]
        self._mines = list(layout)
        for x, y in self._mines:
            self.board[x][y] = MINE
        for x in range(self.size):
            for y in range(self.size):
                if self.board[x][y] != MINE:
                    self.board[x][y] = self._count_adjacent_mines(x, y)
        self.first_click = False

    def _place_mines(self, first_x: int, first_y: int) -> None:
        excluded = _safe_zone(first_x, first_y, self.size)
        if self.mines_count > self.size * self.size - len(excluded):
            raise PlacementError("insufficient_space_for_mines")
        placed: List[Tuple[int, int]] = []
        taken: Set[Tuple[int, int]] = set()
        attempts = 0
        while len(placed) < self.mines_count:
            attempts += 1
            if attempts > self.max_placement_attempts:
                raise PlacementError("mine_placement_exhausted")
            candidate = (self._rng.randrange(self.size), self._rng.randrange(self.size))
            if candidate in excluded or candidate in taken:
                continue
            taken.add(candidate)
            placed.append(candidate)
        self._commit_layout(placed)

    def pin_mines(self, layout: Iterable[Tuple[int, int]]) -> None:
        """Install a known mine layout instead of sampling one.

        Only allowed before the first reveal. Neighbour counts are derived
        with the same rule as a randomly placed layout.
        """
        if not self.first_click or self._moves:
            raise ValueError("mines_already_placed")
        positions = [(int(x), int(y)) for x, y in layout]
        if len(positions) != self.mines_count:
            raise ValueError("mine_count_mismatch")
        if len(set(positions)) != len(positions):
            raise ValueError("duplicate_mine")
        for x, y in positions:
            if not (0 <= x < self.size and 0 <= y < self.size):
                raise ValueError("mine_out_of_bounds")
        self._commit_layout(positions)

    # actions

    def check_bounds(self, x: int, y: int) -> None:
        if not (0 <= x < self.size and 0 <= y < self.size):
            raise ValueError("out of bounds")

    def _log_move(self, x: int, y: int, outcome: str) -> None:
        self._moves.append(Move(len(self._moves) + 1, x, y, outcome))

    def reveal(self, x: int, y: int) -> RevealResult:
        self.check_bounds(x, y)
        if self.game_over or self.revealed[x][y] or self.flagged[x][y]:
            return RevealResult((), INVALID)
        if self.first_click:
            self._place_mines(x, y)
        self.status = IN_PROGRESS

        if self.board[x][y] == MINE:
            self.revealed[x][y] = True
            self.status = STATUS_LOST
            self._log_move(x, y, EXPLODED)
            return RevealResult((RevealedCell(x, y, MINE),), EXPLODED)

        cells: List[RevealedCell] = []
        frontier = deque([(x, y)])
        while frontier:
            cx, cy = frontier.pop()
            if self.revealed[cx][cy] or self.flagged[cx][cy]:
                continue
            self.revealed[cx][cy] = True
            self._revealed_count += 1
            cells.append(RevealedCell(cx, cy, self.board[cx][cy]))
            if self.board[cx][cy] == 0:
                for nx, ny in _neighbors(cx, cy, self.size):
                    if not self.revealed[nx][ny] and not self.flagged[nx][ny]:
                        frontier.append((nx, ny))

        outcome = NO_MINE
        if self.check_win():
            self.status = STATUS_WON
            outcome = WON
        self._log_move(x, y, outcome)
        return RevealResult(tuple(cells), outcome)

    def toggle_flag(self, x: int, y: int) -> bool:
        self.check_bounds(x, y)
        if self.game_over or self.revealed[x][y]:
            return False
        self.flagged[x][y] = not self.flagged[x][y]
        return True

    # export

    def final_result(self) -> str:
        if self.status == STATUS_WON:
            return RESULT_WIN
        if self.status == STATUS_LOST:
            return RESULT_LOSE
        return RESULT_IN_PROGRESS

    def to_record(self, player_label: str, timestamp: Optional[datetime] = None) -> GameRecord:
        record = GameRecord(
            player_label=player_label,
            size=self.size,
            mines_count=self.mines_count,
            mine_layout=self.mines,
            moves=self.moves,
            final_result=self.final_result(),
        )
        if timestamp is not None:
            record = replace(record, timestamp=timestamp)
        return record

    def board_snapshot(self) -> Tuple[Tuple[Tuple[int, bool], ...], ...]:
        return tuple(
            tuple((self.board[x][y], self.revealed[x][y]) for y in range(self.size))
            for x in range(self.size)
        )

    def to_client_view(self) -> List[List[str]]:
        view: List[List[str]] = []
        for x in range(self.size):
            row: List[str] = []
            for y in range(self.size):
                value = self.board[x][y]
                if value == MINE and (self.game_over or self.revealed[x][y]):
                    cell = "M"
                elif self.revealed[x][y]:
                    cell = str(value)
                else:
                    cell = "F" if self.flagged[x][y] else "H"
                row.append(cell)
            view.append(row)
        return view
