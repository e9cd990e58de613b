from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from yafti.errors import ConfigurationError


DEFAULT_CATALOG_FILE_NAME = "yafti.toml"
DEFAULT_WELCOME_TITLE = "Welcome"


@dataclass(frozen=True)
class Action:
    id: str
    title: str
    script: str = ""
    description: str = ""
    default: bool = False


@dataclass(frozen=True)
class Screen:
    title: str
    actions: tuple[Action, ...] = field(default_factory=tuple)


class ActionCatalog:
    """Read-only, ordered collection of screens and the actions they hold.

    Action ids are unique across the whole catalog, so lookups do not need a
    screen index.
    """

    def __init__(self, screens: list[Screen] | tuple[Screen, ...], title: str = DEFAULT_WELCOME_TITLE):
        self.title = title
        self._screens = tuple(screens)
        self._actions: dict[str, Action] = {}
        for screen in self._screens:
            for action in screen.actions:
                if action.id in self._actions:
                    raise ConfigurationError(f"Duplicate action id '{action.id}'.")
                self._actions[action.id] = action

    @property
    def screens(self) -> tuple[Screen, ...]:
        return self._screens

    def screen(self, index: int) -> Screen:
        if index < 0 or index >= len(self._screens):
            raise IndexError(index)
        return self._screens[index]

    def lookup_action(self, action_id: str) -> Action | None:
        return self._actions.get(action_id)

    def all_actions(self) -> Iterator[Action]:
        return iter(self._actions.values())

    def __len__(self) -> int:
        return len(self._actions)


def _require_str(raw: dict[str, Any], key: str, where: str, required: bool = True) -> str:
    value = raw.get(key)
    if value is None:
        if required:
            raise ConfigurationError(f"{where}: missing required field '{key}'.")
        return ""
    if not isinstance(value, str):
        raise ConfigurationError(f"{where}: field '{key}' must be a string.")
    if required and not value.strip():
        raise ConfigurationError(f"{where}: field '{key}' must not be empty.")
    return value


def _parse_action(raw: Any, where: str) -> Action:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: action must be a table.")
    default = raw.get("default", False)
    if not isinstance(default, bool):
        raise ConfigurationError(f"{where}: field 'default' must be a boolean.")
    return Action(
        id=_require_str(raw, "id", where).strip(),
        title=_require_str(raw, "title", where),
        script=_require_str(raw, "script", where, required=False),
        description=_require_str(raw, "description", where, required=False),
        default=default,
    )


def _parse_screen(raw: Any, index: int) -> Screen:
    where = f"screens[{index}]"
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where}: screen must be a table.")
    raw_actions = raw.get("actions", [])
    if not isinstance(raw_actions, list):
        raise ConfigurationError(f"{where}: 'actions' must be an array of tables.")
    actions = tuple(
        _parse_action(raw_action, f"{where}.actions[{action_index}]")
        for action_index, raw_action in enumerate(raw_actions)
    )
    return Screen(title=_require_str(raw, "title", where), actions=actions)


def parse_catalog(data: dict[str, Any]) -> ActionCatalog:
    raw_screens = data.get("screens", [])
    if not isinstance(raw_screens, list):
        raise ConfigurationError("'screens' must be an array of tables.")
    title = data.get("title", DEFAULT_WELCOME_TITLE)
    if not isinstance(title, str):
        raise ConfigurationError("'title' must be a string.")
    screens = [_parse_screen(raw_screen, index) for index, raw_screen in enumerate(raw_screens)]
    return ActionCatalog(screens, title=title)


def load_catalog(path: Path) -> ActionCatalog:
    path = Path(path)
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Missing catalog file: {path}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Unable to read catalog file {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid catalog file {path}: {exc}") from exc
    return parse_catalog(data)
