"""A list of option values that grows by one item each time the option is given."""

from __future__ import annotations


class AppendSliceValue(list):
    """A list of strings suited to a repeatable command-line option.

    Each call to :meth:`set` appends another value. This lets the same
    flag be given several times.
    """

    def set(self, value: str) -> None:
        """Append ``value`` to the collected values."""
        self.append(value)

    def __str__(self) -> str:
        return ",".join(self)