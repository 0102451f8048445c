"""Listener lists with unsubscribe handles."""

from typing import Callable, Generic, List, TypeVar

from loguru import logger

T = TypeVar("T")


class Listeners(Generic[T]):
    """Observers of one kind of event.

    subscribe() returns a callable that removes the listener again. emit()
    walks a copy of the list, so listeners may unsubscribe while being
    notified.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.opt(exception=True).error(f"Listener for {self.name} raised")

    def __len__(self) -> int:
        return len(self._listeners)
