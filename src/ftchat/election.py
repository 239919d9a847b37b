from typing import Iterable, Optional


def elect_coordinator(identities: Iterable[str]) -> Optional[str]:
    """Pick the coordinator among the connected identities.

    Deterministic: the lexicographically smallest identity wins. Returns None
    when nobody is left. Stateless, so it can be re-run on every departure.
    """
    return min(identities, default=None)
