from __future__ import annotations

from typing import Any, Dict, Optional
import logging

from .game_engine import Engine
from .records import INVALID, GameRecord, RevealResult

logger = logging.getLogger(__name__)


class GameSession:
    """One player's live game plus the bookkeeping needed to save it once.

    The record is written when the engine reaches a terminal state or the
    player abandons. A failed save is logged and kept in ``save_error``;
    it never changes the in-memory game.
    """

    def __init__(
        self,
        player_label: str,
        size: int,
        mines_count: int,
        rng_seed: int | None = None,
    ) -> None:
        self.player_label = player_label
        self.engine = Engine(size, mines_count, rng_seed=rng_seed)
        self.abandoned = False
        self.game_id: Optional[str] = None
        self.save_error: Optional[str] = None
        self.save_attempted = False

    @property
    def finished(self) -> bool:
        return self.engine.game_over or self.abandoned

    @property
    def status(self) -> str:
        if self.abandoned and not self.engine.game_over:
            return "abandoned"
        return self.engine.status

    @property
    def needs_save(self) -> bool:
        return self.finished and not self.save_attempted

    def reveal(self, x: int, y: int) -> RevealResult:
        if self.abandoned:
            self.engine.check_bounds(x, y)
            return RevealResult((), INVALID)
        return self.engine.reveal(x, y)

    def toggle_flag(self, x: int, y: int) -> bool:
        if self.abandoned:
            self.engine.check_bounds(x, y)
            return False
        return self.engine.toggle_flag(x, y)

    def abandon(self) -> None:
        if not self.engine.game_over:
            self.abandoned = True

    def record(self) -> GameRecord:
        return self.engine.to_record(self.player_label)

    def save(self, persistence: Any) -> Optional[str]:
        if not self.needs_save:
            return self.game_id
        self.save_attempted = True
        record = self.record()
        try:
            game_id = persistence.save_game(record)
        except Exception as e:
            self.save_error = str(e) or e.__class__.__name__
            logger.warning(
                f"[minereplay] save failed player={self.player_label} "
                f"result={record.final_result} error={self.save_error}"
            )
            return None
        self.game_id = game_id
        self.save_error = None
        logger.info(
            f"[minereplay] saved game_id={game_id} player={self.player_label} "
            f"result={record.final_result} moves={len(record.moves)}"
        )
        return game_id

    def to_client(self) -> Dict[str, Any]:
        engine = self.engine
        return {
            "status": self.status,
            "board": engine.to_client_view(),
            "size": engine.size,
            "mines_count": engine.mines_count,
            "player_label": self.player_label,
            "moves_count": len(engine.moves),
            "moves": [m.to_dict() for m in engine.moves],
            "flags_total": engine.flag_count,
            "revealed_total": engine.revealed_count,
            "end_result": engine.final_result() if self.finished else None,
            "saved_game_id": self.game_id,
            "save_error": self.save_error,
        }
