"""Identity-checked publication of asynchronous results."""

from __future__ import annotations

import enum
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TicketState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    APPLIED = "applied"
    SUPERSEDED = "superseded"


@dataclass(slots=True)
class FetchTicket:
    """A dispatched fetch together with the subject it was dispatched for."""

    query_class: str
    subject: Hashable
    generation: int
    state: TicketState = TicketState.IDLE


class SupersessionGuard:
    """Tracks the current subject per query class and rejects stale results.

    Dispatching a fetch moves a ticket to ``PENDING``. When it completes the
    ticket is ``APPLIED`` only if it is still the latest dispatch for its
    query class and the class's current subject equals the captured one;
    otherwise it is ``SUPERSEDED`` and the result is dropped. Outstanding I/O
    is never cancelled, only its publication.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._current: dict[str, tuple[Hashable, int]] = {}

    def current_subject(self, query_class: str) -> Hashable | None:
        current = self._current.get(query_class)
        return current[0] if current else None

    def dispatch(self, query_class: str, subject: Hashable) -> FetchTicket:
        """Make ``subject`` current for ``query_class`` and return its ticket."""

        generation = next(self._counter)
        self._current[query_class] = (subject, generation)
        return FetchTicket(
            query_class=query_class,
            subject=subject,
            generation=generation,
            state=TicketState.PENDING,
        )

    def is_current(self, ticket: FetchTicket) -> bool:
        current = self._current.get(ticket.query_class)
        if current is None:
            return False
        subject, generation = current
        return generation == ticket.generation and subject == ticket.subject

    def complete(self, ticket: FetchTicket) -> bool:
        """Settle ``ticket`` and return whether its result may be published."""

        if ticket.state is not TicketState.PENDING:
            return ticket.state is TicketState.APPLIED
        if self.is_current(ticket):
            ticket.state = TicketState.APPLIED
            return True
        ticket.state = TicketState.SUPERSEDED
        logger.debug(
            "Dropping superseded %s result for %r", ticket.query_class, ticket.subject
        )
        return False

    def still_current(self, ticket: FetchTicket) -> bool:
        """Check a ticket for an incremental publish without settling it."""

        return ticket.state is TicketState.PENDING and self.is_current(ticket)

    def invalidate(self, query_class: str | None = None) -> None:
        """Forget current subjects so every in-flight ticket is superseded."""

        if query_class is None:
            self._current.clear()
        else:
            self._current.pop(query_class, None)

    async def run(
        self,
        query_class: str,
        subject: Hashable,
        fetch: Callable[[], Awaitable[T]],
        publish: Callable[[T], Any],
    ) -> bool:
        """Dispatch ``fetch`` for ``subject`` and publish its result if still current."""

        ticket = self.dispatch(query_class, subject)
        result = await fetch()
        if self.complete(ticket):
            publish(result)
            return True
        return False
