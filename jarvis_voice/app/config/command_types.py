from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict


class MediaKey(str, Enum):
    """System playback control symbols dispatched as a key down/up pair."""

    PLAY_PAUSE = "PLAY_PAUSE"
    NEXT = "NEXT"
    PREVIOUS = "PREVIOUS"


class CommandRule(BaseModel):
    """One entry of the ordered command table.

    Rules are evaluated in order against normalized (lower-cased, trimmed) text and
    the first rule whose predicate holds wins.

    Attributes:
        name: Short identifier used in logs.
        predicate: Callable deciding whether normalized text triggers this rule.
        response: Text spoken back when the rule fires.
        side_effect: Optional media key dispatched when the rule fires.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    predicate: Callable[[str], bool]
    response: str
    side_effect: Optional[MediaKey] = None


class MatchOutcome(BaseModel):
    """Result of classifying one partial hypothesis against the command table."""

    model_config = ConfigDict(frozen=True)

    matched: bool = False
    rule_name: Optional[str] = None
    response: Optional[str] = None
    side_effect: Optional[MediaKey] = None


NO_MATCH = MatchOutcome()
