from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only mapping used for model options and class registries.

    Model instances share one options mapping per query, so it must not be
    mutable by any of them. Derive a changed copy with ``merge`` or ``|``.

    Example:
        >>> options = frozendict(connection="primary")
        >>> options.merge(connection="secondary")
        <frozendict {'connection': 'secondary'}>
    """

    __slots__ = ("_data", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._data: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[K]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def merge(self, *others: Mapping[Any, Any], **items: Any) -> Self:
        """Return a new instance with *others* and *items* layered on top."""
        data: dict[Any, Any] = dict(self._data)
        for other in others:
            data.update(other)
        data.update(items)

        return type(self)(data)

    def __or__(self, other: object) -> Self:
        if not isinstance(other, Mapping):
            return NotImplemented

        return self.merge(other)

    def __hash__(self) -> int:
        # values may be unhashable (e.g. lists); compute on demand only
        if self._hash is None:
            self._hash = hash(frozenset(self._data.items()))

        return self._hash

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._data == other._data

        if isinstance(other, Mapping):
            return self._data == dict(other)

        return NotImplemented

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._data!r}>"
