"""Structured data reported by the application under test.

The device writes one JSON document per test. The runner does not interpret
it; it only turns it into typed pass-through records for the result model.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from fleet_test_runner.errors import MalformedAppData
from fleet_test_runner.models.base import Model

log = logging.getLogger(__name__)


class KeyValuePair(Model):
    """A single named value reported by the app."""

    name: str
    value: str


class GameTestData(Model):
    """A single in-app test record reported by the app."""

    time: int = 0
    assert_message: str
    interaction_type: str | None = None
    status: str
    test: str
    locale: str | None = None


class AppData(Model):
    """App-reported data attached to a single test."""

    user: tuple[KeyValuePair, ...] = ()
    server: tuple[KeyValuePair, ...] = ()
    split_test_assignments: tuple[KeyValuePair, ...] = ()
    game_tests: tuple[GameTestData, ...] = ()

    @classmethod
    def parse(cls, raw: str) -> "AppData":
        """Parse an app data document.

        Each section is parsed independently: a missing or malformed section
        is left empty and the remaining sections are kept.

        Raises:
            MalformedAppData: If the document is not a JSON object

        """
        try:
            root = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedAppData(f"App data is not valid JSON: {e}") from e

        if not isinstance(root, dict):
            raise MalformedAppData(
                f"App data must be a JSON object, got {type(root).__name__}"
            )

        return cls(
            user=_parse_pairs(root, "user"),
            server=_parse_pairs(root, "server"),
            split_test_assignments=_parse_pairs(root, "split_test_assignments"),
            game_tests=_parse_game_tests(root),
        )


def _parse_pairs(root: Mapping[str, Any], section: str) -> tuple[KeyValuePair, ...]:
    value = root.get(section)
    if value is None:
        return ()
    if not isinstance(value, dict):
        log.warning("Ignoring app data section %r: expected an object", section)
        return ()

    pairs: list[KeyValuePair] = []
    for name, item in value.items():
        if item is None or isinstance(item, (dict, list)):
            log.warning("Ignoring app data section %r: %r is not a scalar", section, name)
            return ()
        pairs.append(KeyValuePair(name=name, value=_as_string(item)))
    return tuple(pairs)


def _parse_game_tests(root: Mapping[str, Any]) -> tuple[GameTestData, ...]:
    game = root.get("game")
    if game is None:
        return ()

    tests = game.get("tests") if isinstance(game, dict) else None
    if not isinstance(tests, list):
        log.warning("Ignoring app data section 'game': no 'tests' array")
        return ()

    records: list[GameTestData] = []
    for entry in tests:
        try:
            records.append(
                GameTestData(
                    time=int(entry.get("time", 0)),
                    assert_message=_as_string(entry["assertMessage"]),
                    interaction_type=_optional_string(entry.get("interactionType")),
                    status=_as_string(entry["status"]),
                    test=_as_string(entry["test"]),
                    locale=_optional_string(entry.get("locale")),
                )
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            log.warning("Ignoring app data section 'game': bad test record (%s)", e)
            return ()
    return tuple(records)


def _as_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        raise TypeError("value is null")
    return str(value)


def _optional_string(value: Any) -> str | None:
    return None if value is None else _as_string(value)
