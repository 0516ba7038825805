"""
Change Notification
===================

Typed observer registry shared by AuthCoordinator, CaseRepository and
ModerationQueue.

Delivery rules:
- synchronous, in subscription order
- a failing listener is logged and skipped; the remaining listeners still run
- a listener may subscribe to every event or to a fixed set of event kinds

Also hosts the trailing-edge Debouncer used for search-as-you-type.
"""

import asyncio
import logging
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)


class ChangeEvent(str, Enum):
    """Event kinds fanned out to consumers"""
    # Auth
    USER_LOGGED_IN = "userLoggedIn"
    USER_LOGGED_OUT = "userLoggedOut"
    USER_UPDATED = "userUpdated"

    # Cases
    DATA_LOADED = "dataLoaded"
    CASO_ADDED = "casoAdded"
    CASO_UPDATED = "casoUpdated"
    CASO_DELETED = "casoDeleted"
    CASO_APPROVED = "casoApproved"
    CASO_REJECTED = "casoRejected"

    # Moderation
    COMENTARIO_ADDED = "comentarioAdded"
    COMENTARIO_APPROVED = "comentarioApproved"
    COMENTARIO_DELETED = "comentarioDeleted"
    SUGESTAO_ADDED = "sugestaoAdded"
    SUGESTAO_APPROVED = "sugestaoApproved"
    SUGESTAO_REJECTED = "sugestaoRejected"
    SOLICITACAO_ADDED = "solicitacaoAdded"
    SOLICITACAO_UPDATED = "solicitacaoUpdated"


Listener = Callable[[ChangeEvent, Any], None]


@dataclass
class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to stop delivery"""
    token: int
    listener: Listener
    events: Optional[FrozenSet[ChangeEvent]]
    notifier: "ChangeNotifier"

    def wants(self, event: ChangeEvent) -> bool:
        return self.events is None or event in self.events

    def unsubscribe(self) -> None:
        self.notifier._remove(self.token)


class ChangeNotifier:
    """Listener registry with isolated, ordered, synchronous delivery."""

    def __init__(self, name: str = "changes"):
        self.name = name
        self._subscriptions: Dict[int, Subscription] = {}
        self._tokens = itertools.count(1)

    def subscribe(
        self,
        listener: Listener,
        events: Optional[Iterable[ChangeEvent]] = None,
    ) -> Subscription:
        """
        Register a listener.

        Args:
            listener: Called as listener(event, data)
            events: Optional event kinds to receive (default: all)

        Returns:
            Subscription handle
        """
        if not callable(listener):
            raise TypeError("listener must be callable")

        subscription = Subscription(
            token=next(self._tokens),
            listener=listener,
            events=frozenset(events) if events is not None else None,
            notifier=self,
        )
        self._subscriptions[subscription.token] = subscription
        return subscription

    def unsubscribe(self, listener: Listener) -> int:
        """Remove every subscription of a listener. Returns how many were removed."""
        tokens = [t for t, s in self._subscriptions.items() if s.listener == listener]
        for token in tokens:
            self._remove(token)
        return len(tokens)

    def _remove(self, token: int) -> None:
        self._subscriptions.pop(token, None)

    def notify(self, event: ChangeEvent, data: Any = None) -> int:
        """
        Deliver an event to every interested listener.

        Returns:
            Number of listeners that handled the event without raising
        """
        delivered = 0
        # Snapshot: listeners may (un)subscribe while we deliver
        for subscription in list(self._subscriptions.values()):
            if not subscription.wants(event):
                continue
            try:
                subscription.listener(event, data)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"[{self.name}] listener {subscription.listener!r} failed on {event.value}: {e}",
                    exc_info=True,
                )
        return delivered

    def clear(self) -> None:
        self._subscriptions.clear()

    def __len__(self) -> int:
        return len(self._subscriptions)


class Debouncer:
    """
    Trailing-edge debounce on the running event loop.

    Rapid calls collapse into one call with the latest arguments, fired
    `wait` seconds after the last call. Coroutine functions are scheduled as
    tasks.
    """

    def __init__(self, func: Callable[..., Any], wait: float = 0.3):
        self.func = func
        self.wait = wait
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: List[asyncio.Task] = []

    def __call__(self, *args, **kwargs) -> None:
        loop = asyncio.get_running_loop()
        self.cancel()
        self._handle = loop.call_later(self.wait, self._fire, args, kwargs)

    def _fire(self, args, kwargs) -> None:
        self._handle = None
        result = self.func(*args, **kwargs)
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.append(task)
            task.add_done_callback(self._tasks.remove)

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
