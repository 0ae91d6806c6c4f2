"""Prize table -> per-participant allocations, in integer cents.

Used for the final payout run and for the potential payouts shown on a live
leaderboard, so both always agree.
"""

from typing import Any, Sequence

from contest_engine.models.contest import PrizePool
from contest_engine.utils import to_cents


def tier_cents(prize_pool: PrizePool) -> dict[int, int]:
    """Cents per prize rank.

    Fixed tiers are taken as-is. Percentage tiers are floored and the cents
    lost to flooring go one by one to the best-placed percentage tiers, so a
    table summing to 100% pays out exactly the total prize.
    """
    total = to_cents(prize_pool.total_prize)
    result: dict[int, int] = {}
    pct_tiers = []
    for tier in sorted(prize_pool.distribution, key=lambda t: t.rank):
        if tier.amount is not None:
            result[tier.rank] = to_cents(tier.amount)
        else:
            pct_tiers.append(tier)

    pct_sum = sum(float(t.percentage) for t in pct_tiers)
    target = int(round(total * pct_sum / 100.0))
    floors = {t.rank: int(total * float(t.percentage) // 100) for t in pct_tiers}
    remainder = target - sum(floors.values())
    for tier in pct_tiers:
        if remainder <= 0:
            break
        floors[tier.rank] += 1
        remainder -= 1
    result.update(floors)
    return result


def allocate(prize_pool: PrizePool, ranked: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Split the prize table over an ordered leaderboard.

    ``ranked`` is best-first; each item has ``user_id``, ``rank`` and
    ``tie_key``. Participants with identical tie keys share the combined
    prizes of every position their group occupies; odd cents go to the
    group's earliest members. Returns [{user_id, rank, cents}] for every
    participant with a non-zero allocation.
    """
    by_position = tier_cents(prize_pool)
    allocations: list[dict[str, Any]] = []
    i = 0
    while i < len(ranked):
        j = i
        while j + 1 < len(ranked) and ranked[j + 1]["tie_key"] == ranked[i]["tie_key"]:
            j += 1
        group = ranked[i:j + 1]
        pool = sum(by_position.get(position, 0) for position in range(i + 1, j + 2))
        if pool > 0:
            share, odd = divmod(pool, len(group))
            for idx, entry in enumerate(group):
                cents = share + (1 if idx < odd else 0)
                if cents > 0:
                    allocations.append({"user_id": entry["user_id"], "rank": entry["rank"], "cents": cents})
        i = j + 1
    return allocations
