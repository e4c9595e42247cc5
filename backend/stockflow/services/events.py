# Overview: Post-commit domain events published to an explicit observer list.

"""
StockFlow domain events.

- Events are published only AFTER the write they describe has committed.
- Publishing is fire-and-forget: a failing subscriber is logged and skipped,
  it never rolls back or fails the stock operation.
- The observer list lives on the Flask app (app.extensions), not in module
  globals, so each app (and each test app) has its own subscribers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps
from typing import Callable

from flask import current_app

from ..errors import StockError


EXTENSION_KEY = "stockflow.events"


@dataclass(frozen=True)
class StockEvent:
    event_type: str
    operator_id: int
    title: str
    message: str
    kind: str = "info"
    product_id: int | None = None
    quantity: int | None = None
    payload: dict = field(default_factory=dict)


class EventBus:
    def __init__(self):
        self._subscribers: list[Callable[[StockEvent], None]] = []

    def subscribe(self, callback: Callable[[StockEvent], None]):
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: StockEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                current_app.logger.exception(
                    "Event subscriber %r failed for %s", callback, event.event_type
                )


def init_app(app) -> EventBus:
    bus = EventBus()
    app.extensions[EXTENSION_KEY] = bus
    return bus


def get_event_bus() -> EventBus:
    return current_app.extensions[EXTENSION_KEY]


def publish(event: StockEvent) -> None:
    get_event_bus().publish(event)


def publishes_rejections(action: str):
    """
    Report rejected operations to the operator.

    Wraps a service entry point taking a keyword `operator_id`; any StockError
    it raises is published as an "error" event and then re-raised unchanged.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except StockError as exc:
                operator_id = kwargs.get("operator_id")
                if operator_id is not None and exc.code != "NOT_AUTHENTICATED":
                    publish(StockEvent(
                        event_type=f"{action}.rejected",
                        operator_id=operator_id,
                        title=f"{action.replace('_', ' ').capitalize()} rejected",
                        message=str(exc),
                        kind="error",
                        product_id=exc.details.get("product_id"),
                        quantity=exc.details.get("requested"),
                        payload={"code": exc.code, "details": exc.details},
                    ))
                raise
        return wrapper
    return decorator
