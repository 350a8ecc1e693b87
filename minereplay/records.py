from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, NamedTuple, Tuple


NO_MINE = "no_mine"
EXPLODED = "exploded"
WON = "won"
INVALID = "invalid"

MOVE_OUTCOMES = (NO_MINE, EXPLODED, WON)
TERMINAL_OUTCOMES = (EXPLODED, WON)

RESULT_WIN = "win"
RESULT_LOSE = "lose"
RESULT_IN_PROGRESS = "in_progress"

FINAL_RESULTS = (RESULT_WIN, RESULT_LOSE, RESULT_IN_PROGRESS)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RevealedCell(NamedTuple):
    x: int
    y: int
    value: int


@dataclass(frozen=True)
class RevealResult:
    revealed: Tuple[RevealedCell, ...]
    outcome: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revealed": [{"x": c.x, "y": c.y, "value": c.value} for c in self.revealed],
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class Move:
    """One logged reveal. Flag toggles never produce a Move."""

    move_number: int
    x: int
    y: int
    outcome: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "move_number": self.move_number,
            "x": self.x,
            "y": self.y,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Move:
        outcome = data["outcome"]
        if outcome not in MOVE_OUTCOMES:
            raise ValueError(f"unknown move outcome: {outcome}")
        return cls(
            move_number=int(data["move_number"]),
            x=int(data["x"]),
            y=int(data["y"]),
            outcome=outcome,
        )


@dataclass(frozen=True)
class GameRecord:
    """Everything needed to replay a finished (or abandoned) game.

    The mine layout is kept in placement order. Firestore cannot store
    nested arrays, so ``to_dict`` writes each position as an ``{"x", "y"}``
    map and ``from_dict`` accepts either that form or plain pairs.
    """

    player_label: str
    size: int
    mines_count: int
    mine_layout: Tuple[Tuple[int, int], ...]
    moves: Tuple[Move, ...] = ()
    final_result: str = RESULT_IN_PROGRESS
    timestamp: datetime = field(default_factory=_now)

    def header_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "player_label": self.player_label,
            "size": self.size,
            "mines_count": self.mines_count,
            "mine_layout": [{"x": x, "y": y} for x, y in self.mine_layout],
            "final_result": self.final_result,
        }

    def to_dict(self) -> Dict[str, Any]:
        doc = self.header_dict()
        doc["moves"] = [m.to_dict() for m in self.moves]
        return doc

    @classmethod
    def from_dict(cls, data: Dict[str, Any], moves: Any = None) -> GameRecord:
        if moves is None:
            moves = data.get("moves") or []
        layout = []
        for pos in data["mine_layout"]:
            if isinstance(pos, dict):
                layout.append((int(pos["x"]), int(pos["y"])))
            else:
                x, y = pos
                layout.append((int(x), int(y)))
        final_result = data.get("final_result", RESULT_IN_PROGRESS)
        if final_result not in FINAL_RESULTS:
            raise ValueError(f"unknown final result: {final_result}")
        timestamp = data.get("timestamp") or _now()
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            player_label=str(data.get("player_label", "")),
            size=int(data["size"]),
            mines_count=int(data["mines_count"]),
            mine_layout=tuple(layout),
            moves=tuple(m if isinstance(m, Move) else Move.from_dict(m) for m in moves),
            final_result=final_result,
            timestamp=timestamp,
        )
