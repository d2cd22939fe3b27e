import logging
from typing import Callable, List, Sequence

from jarvis_voice.app.config.app_config import CommandsConfig
from jarvis_voice.app.config.command_types import NO_MATCH, CommandRule, MatchOutcome, MediaKey

logger = logging.getLogger(__name__)


def normalize_text(text: str) -> str:
    return text.lower().strip()


def _contains_any(tokens: Sequence[str]) -> Callable[[str], bool]:
    return lambda text: any(token in text for token in tokens)


def _phrase_or_exact(phrases: Sequence[str], exact: Sequence[str]) -> Callable[[str], bool]:
    return lambda text: any(phrase in text for phrase in phrases) or text in exact


def build_command_rules(config: CommandsConfig) -> List[CommandRule]:
    """Build the ordered command table from configuration.

    Order matters: the first rule whose predicate holds wins, so a greeting that
    also ends with an assistant name is answered as a greeting.
    """
    has_greeting = _contains_any(config.greeting_tokens)
    has_name = _contains_any(config.assistant_names)

    def is_greeting(text: str) -> bool:
        return has_greeting(text) and has_name(text)

    def is_wake_word(text: str) -> bool:
        return any(text.endswith(name) for name in config.assistant_names) and len(text) < config.wake_word_max_length

    return [
        CommandRule(name="greeting", predicate=is_greeting, response=config.greeting_response),
        CommandRule(name="wake_word", predicate=is_wake_word, response=config.wake_word_response),
        CommandRule(
            name="play_pause",
            predicate=_phrase_or_exact(config.play_pause_phrases, config.play_pause_exact),
            response=config.play_pause_response,
            side_effect=MediaKey.PLAY_PAUSE,
        ),
        CommandRule(
            name="next_track",
            predicate=_phrase_or_exact(config.next_track_phrases, config.next_track_exact),
            response=config.next_track_response,
            side_effect=MediaKey.NEXT,
        ),
        CommandRule(
            name="previous_track",
            predicate=_phrase_or_exact(config.previous_track_phrases, config.previous_track_exact),
            response=config.previous_track_response,
            side_effect=MediaKey.PREVIOUS,
        ),
    ]


class CommandMatcher:
    """Classifies partial hypotheses against a fixed, ordered command table.

    ``match`` has no hidden state: the same text always yields the same outcome, so
    it is safe to call on every revision of a growing partial hypothesis.
    """

    def __init__(self, rules: Sequence[CommandRule]) -> None:
        self._rules = tuple(rules)

    @classmethod
    def from_config(cls, config: CommandsConfig) -> "CommandMatcher":
        return cls(build_command_rules(config))

    @property
    def rules(self) -> Sequence[CommandRule]:
        return self._rules

    def match(self, partial_text: str) -> MatchOutcome:
        text = normalize_text(partial_text)
        if not text:
            return NO_MATCH

        for rule in self._rules:
            if rule.predicate(text):
                logger.debug(f"Partial CMD Matched: {rule.name} ({text!r})")
                return MatchOutcome(matched=True, rule_name=rule.name, response=rule.response, side_effect=rule.side_effect)

        return NO_MATCH
