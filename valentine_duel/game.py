# game.py
import secrets
import string
from typing import List, Optional

GAME_CODE_LENGTH = 6
GAME_CODE_ALPHABET = string.ascii_uppercase + string.digits

WINNING_LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),  # rows
    (0, 3, 6), (1, 4, 7), (2, 5, 8),  # columns
    (0, 4, 8), (2, 4, 6),             # diagonals
)


def generate_game_code() -> str:
    """Six uppercase alphanumerics. No collision check; the space is large enough for ad-hoc games."""
    return "".join(secrets.choice(GAME_CODE_ALPHABET) for _ in range(GAME_CODE_LENGTH))


def normalize_game_code(code: str) -> str:
    return (code or "").strip().upper()


def other_symbol(symbol: str) -> str:
    return "O" if symbol == "X" else "X"


class Board:
    def __init__(self):
        self.cells: List[Optional[str]] = [None] * 9
        self.current_player = "X"

    def apply(self, position: int, symbol: str):
        # Peer moves are trusted: no legality check beyond the index.
        if not 0 <= position < 9:
            raise ValueError(f"position {position} is off the board")
        self.cells[position] = symbol
        self.current_player = other_symbol(symbol)

    def is_free(self, position: int) -> bool:
        return 0 <= position < 9 and self.cells[position] is None

    def outcome(self) -> Optional[str]:
        for a, b, c in WINNING_LINES:
            if self.cells[a] and self.cells[a] == self.cells[b] == self.cells[c]:
                return self.cells[a]
        if all(self.cells):
            return "draw"
        return None

    def reset(self):
        self.cells = [None] * 9
        self.current_player = "X"

    def render(self) -> str:
        rows = []
        for r in range(3):
            rows.append(" | ".join(self.cells[r * 3 + c] or str(r * 3 + c) for c in range(3)))
        return "\n---------\n".join(rows)
