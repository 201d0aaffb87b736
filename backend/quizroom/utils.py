import time
from typing import Callable, Iterable, List

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def sort_leaderboard(players: Iterable) -> List:
    return sorted(players, key=lambda p: (-(p.score or 0), p.name.lower()))


def ordinal_suffix(num: int) -> str:
    j, k = num % 10, num % 100
    if j == 1 and k != 11:
        return "st"
    if j == 2 and k != 12:
        return "nd"
    if j == 3 and k != 13:
        return "rd"
    return "th"
