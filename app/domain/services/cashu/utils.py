"""
Proof amount helpers: splitting, selection, fees and blank outputs
"""
import math
from typing import Iterable, Protocol, Sequence, TypeVar


class HasAmount(Protocol):
    amount: int
    secret: str


P = TypeVar("P", bound=HasAmount)


def sum_amounts(proofs: Iterable[HasAmount]) -> int:
    return sum(proof.amount for proof in proofs)


def split_amount(amount: int, keyset_amounts: Iterable[int]) -> list[int]:
    """
    Greedy split into keyset denominations, biggest first.

    >>> split_amount(13, [1, 2, 4, 8])
    [8, 4, 1]
    """
    outputs: list[int] = []
    for value in sorted(keyset_amounts, reverse=True):
        while amount >= value:
            outputs.append(value)
            amount -= value
        if amount == 0:
            break
    return outputs


def select_proofs_to_send(proofs: Sequence[P], amount: int) -> tuple[list[P], list[P]]:
    """
    Choose proofs covering ``amount``. Returns ``(keep, send)``; ``send`` is
    empty when the proofs cannot cover it.

    Takes the largest proof not above the remainder and recurses on the
    rest; when that path falls short, the smallest proof above the amount
    is sent alone.
    """
    smaller = sorted((p for p in proofs if p.amount <= amount), key=lambda p: p.amount, reverse=True)
    bigger = sorted((p for p in proofs if p.amount > amount), key=lambda p: p.amount)
    next_bigger = bigger[0] if bigger else None

    if not smaller:
        if next_bigger is None:
            return list(proofs), []
        return [p for p in proofs if p.secret != next_bigger.secret], [next_bigger]

    selected = [smaller[0]]
    remainder = amount - smaller[0].amount
    if remainder > 0:
        _, more = select_proofs_to_send(smaller[1:], remainder)
        selected.extend(more)

    if sum_amounts(selected) < amount:
        selected = [next_bigger] if next_bigger is not None else []

    selected_secrets = {p.secret for p in selected}
    return [p for p in proofs if p.secret not in selected_secrets], selected


def input_fee(keyset_ids: Iterable[str], fee_ppk_by_keyset: dict[str, int]) -> int:
    """NUT-02: ceil(sum(input_fee_ppk) / 1000) over every input"""
    total_ppk = sum(fee_ppk_by_keyset.get(keyset_id, 0) for keyset_id in keyset_ids)
    return (total_ppk + 999) // 1000


def blank_output_count(amount: int) -> int:
    """NUT-08 blank outputs needed to return up to ``amount`` as change"""
    if amount <= 0:
        return 0
    return max(math.ceil(math.log2(amount)), 1)
