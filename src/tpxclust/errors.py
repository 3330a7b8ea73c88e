from __future__ import annotations
from typing import Any, Optional


class ConfigError(ValueError):
    """Invalid configuration value, raised before any processing starts."""


class OrderingError(ValueError):
    """
    A hit or trigger stream violated its monotonicity precondition.

    stream   : "hits" or "triggers"
    index    : position of the offending record in its stream
    previous : time (or id) of the record before it
    current  : time (or id) of the offending record
    field    : which field was checked ("toa", "timestamp", "id")
    """

    def __init__(
        self,
        stream: str,
        index: int,
        previous: Any,
        current: Any,
        field: str = "toa",
        detail: Optional[str] = None,
    ) -> None:
        self.stream = stream
        self.index = index
        self.previous = previous
        self.current = current
        self.field = field
        msg = (
            f"{stream} ordering violation at index {index}: "
            f"{field}={current} follows {field}={previous}"
        )
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
