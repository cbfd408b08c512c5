"""Types shared by the converter directions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class ConversionError(RuntimeError):
    """Raised when a whole conversion phase fails and the run is aborted."""


class PlaylistPolicy(str, Enum):
    """How playlists already present in the target are treated.

    ``SOURCE_WINS`` and ``TARGET_WINS`` merge and only differ on same-named
    playlists.  ``SOURCE_ONLY`` drops the target's playlists before
    importing, ``TARGET_ONLY`` keeps them untouched and imports none.
    """

    SOURCE_WINS = "source_wins"
    TARGET_WINS = "target_wins"
    SOURCE_ONLY = "source_only"
    TARGET_ONLY = "target_only"

    @classmethod
    def parse(cls, value: Any) -> "PlaylistPolicy":
        if value is None or value == "":
            return cls.TARGET_WINS
        if isinstance(value, cls):
            return value
        normalised = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalised:
                return member
        raise ValueError(f"Unknown playlist policy '{value}'")


@dataclass
class ConversionReport:
    """Operator-facing log of one conversion run.

    Every note is also sent to the module logger, so the report and the
    process log always agree.
    """

    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    def note(self, message: str, logger: Optional[logging.Logger] = None) -> None:
        (logger or LOGGER).info(message)
        self.notes.append(message)

    def warn(self, message: str, logger: Optional[logging.Logger] = None) -> None:
        (logger or LOGGER).warning(message)
        self.notes.append(message)
        self.warnings.append(message)

    def bump(self, key: str, amount: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + amount


def run_phase(name: str, report: ConversionReport, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run one conversion phase, turning any failure into :class:`ConversionError`.

    Record-level problems are expected to be handled inside ``func``; whatever
    escapes it aborts the run.
    """

    report.note(f"Processing {name}...")
    try:
        return func(*args, **kwargs)
    except ConversionError:
        raise
    except Exception as exc:
        LOGGER.exception("%s phase failed", name)
        raise ConversionError(f"{name} phase failed: {exc}") from exc
