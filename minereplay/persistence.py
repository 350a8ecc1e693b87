from __future__ import annotations

from typing import Any, Dict, List, Optional
import os

try:
    from google.api_core.exceptions import AlreadyExists  # type: ignore
    from google.cloud import firestore  # type: ignore
except Exception:  # pragma: no cover
    AlreadyExists = None  # type: ignore
    firestore = None  # type: ignore

from .records import GameRecord, Move


def _seq_id(n: int) -> str:
    return f"{n:06d}"


def _summary(game_id: str, doc: Dict[str, Any], moves_count: int) -> Dict[str, Any]:
    return {
        "game_id": game_id,
        "timestamp": doc["timestamp"],
        "player_label": doc["player_label"],
        "size": doc["size"],
        "mines_count": doc["mines_count"],
        "final_result": doc["final_result"],
        "moves_count": moves_count,
    }


class InMemoryPersistence:
    """Simple in-memory persistence for tests and local dev."""

    def __init__(self) -> None:
        self.games: Dict[str, Dict[str, Any]] = {}
        self.moves: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_id = 1

    def save_game_record(self, record: GameRecord) -> str:
        game_id = str(self._next_id)
        self._next_id += 1
        self.games[game_id] = record.header_dict()
        self.moves[game_id] = {}
        return game_id

    def save_move(self, game_id: str, move: Move) -> None:
        if game_id not in self.games:
            raise KeyError("game_not_found")
        moves = self.moves[game_id]
        if move.move_number in moves:
            raise ValueError("duplicate_move")
        moves[move.move_number] = move.to_dict()

    def save_game(self, record: GameRecord) -> str:
        """Store the header and every move, or nothing at all."""
        game_id = self.save_game_record(record)
        try:
            for move in record.moves:
                self.save_move(game_id, move)
        except Exception:
            self.games.pop(game_id, None)
            self.moves.pop(game_id, None)
            raise
        return game_id

    def get_moves_for_game(self, game_id: str) -> List[Move]:
        moves = self.moves.get(game_id) or {}
        return [Move.from_dict(moves[n]) for n in sorted(moves)]

    def get_game_record(self, game_id: str) -> Optional[GameRecord]:
        doc = self.games.get(game_id)
        if doc is None:
            return None
        return GameRecord.from_dict(doc, moves=self.get_moves_for_game(game_id))

    def list_game_records(self) -> List[Dict[str, Any]]:
        return [
            _summary(game_id, doc, len(self.moves.get(game_id) or {}))
            for game_id, doc in self.games.items()
        ]


class FirestorePersistence:
    """Firestore-backed persistence using Native mode.

    Uses FIRESTORE_EMULATOR_HOST if present; otherwise connects to production.
    Each game is a document in ``minesweeperGames`` with its moves in a
    ``moves`` subcollection keyed by the zero-padded move number.
    """

    def __init__(self, client: Optional[Any] = None) -> None:
        if client is not None:
            self.client = client
        else:
            if firestore is None:
                raise RuntimeError("google-cloud-firestore not available")
            self.client = firestore.Client(project=os.environ.get("GOOGLE_CLOUD_PROJECT"))

    def _games_ref(self):
        return self.client.collection("minesweeperGames")

    def _game_ref(self, game_id: str):
        return self._games_ref().document(game_id)

    def _moves_ref(self, game_id: str):
        return self._game_ref(game_id).collection("moves")

    def save_game_record(self, record: GameRecord) -> str:
        gref = self._games_ref().document()
        doc = record.header_dict()
        doc["moves_count"] = len(record.moves)
        gref.set(doc)
        return gref.id

    def save_move(self, game_id: str, move: Move) -> None:
        if not self._game_ref(game_id).get().exists:
            raise KeyError("game_not_found")
        mref = self._moves_ref(game_id).document(_seq_id(move.move_number))
        # create() fails server-side if the document already exists
        try:
            mref.create(move.to_dict())
        except AlreadyExists:
            raise ValueError("duplicate_move")

    def save_game(self, record: GameRecord) -> str:
        """Write the header and all moves in a single batch commit."""
        numbers = [m.move_number for m in record.moves]
        if len(set(numbers)) != len(numbers):
            raise ValueError("duplicate_move")
        gref = self._games_ref().document()
        doc = record.header_dict()
        doc["moves_count"] = len(record.moves)
        batch = self.client.batch()
        batch.set(gref, doc)
        for move in record.moves:
            batch.set(gref.collection("moves").document(_seq_id(move.move_number)), move.to_dict())
        batch.commit()
        return gref.id

    def get_moves_for_game(self, game_id: str) -> List[Move]:
        query = self._moves_ref(game_id).order_by("move_number")
        return [Move.from_dict(snap.to_dict()) for snap in query.stream()]

    def get_game_record(self, game_id: str) -> Optional[GameRecord]:
        snap = self._game_ref(game_id).get()
        if not snap.exists:
            return None
        data = snap.to_dict()
        return GameRecord.from_dict(data, moves=self.get_moves_for_game(game_id))

    def list_game_records(self) -> List[Dict[str, Any]]:
        summaries: List[Dict[str, Any]] = []
        for snap in self._games_ref().order_by("timestamp").stream():
            data = snap.to_dict() or {}
            summaries.append(_summary(snap.id, data, int(data.get("moves_count", 0) or 0)))
        return summaries
