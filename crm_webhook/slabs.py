from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from crm_webhook.config import ConfigurationError

# Thresholds in paise. Upper bounds are inclusive:
#   micro:    amount <= MICRO_MAX
#   standard: MICRO_MAX < amount <= STANDARD_MAX
#   anything above STANDARD_MAX is unclassified (primary table only)
MICRO_MAX = 9900
STANDARD_MAX = 150000


@dataclass(frozen=True)
class Slab:
    name: str
    table: str
    upper_bound: int


class SlabClassifier:
    def __init__(self, micro_max: int = MICRO_MAX, standard_max: int = STANDARD_MAX):
        if not 0 < micro_max < standard_max:
            raise ConfigurationError(
                f"Slab thresholds must satisfy 0 < micro ({micro_max}) < standard ({standard_max})"
            )
        self.slabs: Tuple[Slab, ...] = (
            Slab(name="micro", table="crm_99", upper_bound=micro_max),
            Slab(name="standard", table="crm_1500", upper_bound=standard_max),
        )

    def classify(self, amount: int, status: str, qualifying_statuses: Iterable[str]) -> Optional[Slab]:
        if status not in qualifying_statuses:
            return None
        for slab in self.slabs:
            if amount <= slab.upper_bound:
                return slab
        return None


def classify(amount: int, status: str, qualifying_statuses: Iterable[str] = ("captured",)) -> Optional[Slab]:
    """Classify with the default thresholds."""
    return _default.classify(amount, status, qualifying_statuses)


_default = SlabClassifier()
