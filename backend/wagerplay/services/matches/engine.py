from dataclasses import dataclass
from typing import List, Optional

from wagerplay.models import (
    FINISHED, PLAYING, WIN, X, O, Match, empty_board,
)


LINES = (
    (0, 1, 2), (3, 4, 5), (6, 7, 8),
    (0, 3, 6), (1, 4, 7), (2, 5, 8),
    (0, 4, 8), (2, 4, 6),
)


class MoveRejected(Exception):
    """A move that cannot be applied; the match is left untouched."""

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


@dataclass
class MoveResult:
    finished: bool = False
    draw_reset: bool = False
    winner: Optional[str] = None


def other_mark(mark: str) -> str:
    return O if mark == X else X


def winner_of(board: List[Optional[str]]) -> Optional[str]:
    for a, b, c in LINES:
        v = board[a]
        if v and v == board[b] and v == board[c]:
            return v
    return None


def is_full(board: List[Optional[str]]) -> bool:
    return all(cell in (X, O) for cell in board)


def start_turn(match: Match, now_ms: int, move_ms: int) -> None:
    match.turn_started_at = now_ms
    match.deadline_at = now_ms + move_ms
    match.move_ms = move_ms


def assign_marks(match: Match, joiner: str) -> None:
    """Decide who plays X. Deterministic in match id, joiner and stake."""
    flip = (len(match.id) + len(joiner) + int(match.bet_lamports)) % 2
    if flip == 0:
        match.x_player, match.o_player = match.created_by, joiner
    else:
        match.x_player, match.o_player = joiner, match.created_by


def apply_move(match: Match, index: int, now_ms: int, move_ms: int) -> MoveResult:
    """Place the current mark at ``index``.

    A full board without a winner is not terminal: the board is cleared,
    ``draws`` goes up and play continues with the other mark.
    """
    if match.status != PLAYING:
        raise MoveRejected('Not playing')
    if not isinstance(index, int) or index < 0 or index > 8:
        raise MoveRejected('Bad index')
    board = match.cells
    if board[index] is not None:
        raise MoveRejected('Occupied')

    mark = match.turn if match.turn in (X, O) else X
    board[index] = mark
    match.cells = board
    match.moves = int(match.moves or 0) + 1

    winner = winner_of(board)
    if winner:
        match.status = FINISHED
        match.winner = winner
        match.ended_reason = WIN
        match.turn_started_at = None
        match.deadline_at = None
        return MoveResult(finished=True, winner=winner)

    match.turn = other_mark(mark)
    start_turn(match, now_ms, move_ms)
    if is_full(board):
        match.cells = empty_board()
        match.moves = 0
        match.draws = int(match.draws or 0) + 1
        return MoveResult(draw_reset=True)
    return MoveResult()
