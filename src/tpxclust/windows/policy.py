from __future__ import annotations
from enum import Enum
from typing import Sequence

from ..physics.windows import TriggerWindow


class OverlapPolicy(str, Enum):
    """
    How a hit lying inside more than one trigger window is attributed.

    independent       : every containing window gets the hit (duplication)
    split_at_midpoint : the window with the nearest trigger timestamp gets it,
                        ties go to the earlier trigger
    exclusive         : contested hits are dropped from all windows
    """
    INDEPENDENT = "independent"
    SPLIT_AT_MIDPOINT = "split_at_midpoint"
    EXCLUSIVE = "exclusive"

    def select(self, containing: Sequence[TriggerWindow], toa: int) -> Sequence[TriggerWindow]:
        """
        Return the windows that receive a hit at `toa`.

        `containing` must be every window whose bounds include `toa`, in
        trigger order.
        """
        if len(containing) <= 1 or self is OverlapPolicy.INDEPENDENT:
            return containing
        if self is OverlapPolicy.EXCLUSIVE:
            return ()
        # trigger order == timestamp order, so min() keeps the earliest on ties
        best = min(containing, key=lambda w: abs(toa - w.trigger.timestamp))
        return (best,)
