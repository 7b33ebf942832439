"""
Event Channel
=============

Ordered stream of execution events with an explicit subscriber list.

A channel is created per run and handed to every component that reports
progress. Events are delivered synchronously, in emission order, so
subscribers observe them in the same causal order the orchestrator
produced them.
"""

from typing import Callable, List, Optional, Any
import logging

from taskstack.models import ExecutionEvent, EventType

logger = logging.getLogger(__name__)

Subscriber = Callable[[ExecutionEvent], None]


class EventChannel:
    """
    Per-run event stream.

    Attributes:
        plan_id: Plan ID stamped on events that don't carry one
    """

    def __init__(self, plan_id: Optional[str] = None, keep_history: bool = True):
        self.plan_id = plan_id
        self.keep_history = keep_history
        self._subscribers: List[Subscriber] = []
        self._history: List[ExecutionEvent] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            subscriber: Callable receiving each ExecutionEvent

        Returns:
            Function that removes the subscriber again
        """
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(
        self,
        event_type: EventType,
        task_id: Optional[str] = None,
        **data: Any
    ) -> ExecutionEvent:
        """
        Emit an event to every subscriber.

        A failing subscriber is logged and does not stop delivery to the
        others or affect the run.

        Returns:
            The emitted event
        """
        event = ExecutionEvent(
            type=event_type,
            task_id=task_id,
            plan_id=self.plan_id,
            data=data,
        )
        if self.keep_history:
            self._history.append(event)

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event_type.value}: {e}", exc_info=True)

        return event

    @property
    def events(self) -> List[ExecutionEvent]:
        return list(self._history)

    def events_for(self, task_id: str) -> List[ExecutionEvent]:
        return [e for e in self._history if e.task_id == task_id]

    def of_type(self, event_type: EventType) -> List[ExecutionEvent]:
        return [e for e in self._history if e.type == event_type]


def log_event(event: ExecutionEvent) -> None:
    """Subscriber that writes lifecycle events to the log."""
    if event.type == EventType.TASK_STATE_CHANGE:
        logger.debug(
            f"Task {event.task_id}: {event.data.get('from')} -> {event.data.get('to')}"
            f" ({event.data.get('reason') or 'no reason'})"
        )
    elif event.type == EventType.TASK_FAIL:
        logger.error(f"Task {event.task_id} failed: {event.data.get('error')}")
    elif event.type == EventType.TASK_RETRY:
        logger.warning(
            f"Retrying task {event.task_id} "
            f"(attempt {event.data.get('attempt')}/{event.data.get('max_attempts')})"
        )
    elif event.type == EventType.PROGRESS_UPDATE:
        logger.info(
            f"Progress: {event.data.get('completed')}/{event.data.get('total')} "
            f"({event.data.get('percentage', 0):.0f}%)"
        )
    elif event.task_id:
        logger.info(f"[{event.type.value}] task {event.task_id}")
    else:
        logger.info(f"[{event.type.value}] {event.data}")
