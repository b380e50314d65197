"""Base protocol for binding adapters."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class Binding(Protocol):
    """Connects one UI-side consumer to the query client.

    A binding holds no data of its own; closing it ends the observation
    so the key can be polled down and garbage collected.
    """

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        ...

    def close(self) -> None:
        """Tear down the observation. Idempotent."""
        ...
