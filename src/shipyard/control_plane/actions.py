"""Registry mapping symbolic ``uses`` action names to command argv."""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence

from shipyard.domain.errors import DefinitionError


class ActionRegistry:
    """Immutable-after-load lookup of action name -> argv."""

    __slots__ = ("_actions",)

    def __init__(self, actions: Mapping[str, Sequence[str]] | None = None) -> None:
        self._actions: dict[str, tuple[str, ...]] = {}
        for name, argv in (actions or {}).items():
            self.register(name, argv)

    def register(self, name: str, argv: Sequence[str]) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("action name must be a non-empty string")
        if isinstance(argv, str):
            raise ValueError(f"action {name!r} argv must be a list of strings, not a string")
        command = tuple(argv)
        if not command or not all(isinstance(part, str) and part for part in command):
            raise ValueError(f"action {name!r} argv must be a non-empty list of strings")
        if name in self._actions:
            raise ValueError(f"action {name!r} is already registered")
        self._actions[name] = command

    def resolve(self, name: str, *, path: str | None = None) -> tuple[str, ...]:
        try:
            return self._actions[name]
        except KeyError:
            raise DefinitionError(f"unknown action {name!r}", path=path) from None

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._actions))

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._actions)


__all__ = ["ActionRegistry"]
