"""Incremental delivery of assistant answers.

A ``Delivery`` tracks one answer for one conversation through
``PENDING -> REVEALING -> PERSISTED``. ``FAILED`` is reached when the completion
call yields nothing usable or the final write fails, and ``CANCELLED`` when
the draft is abandoned. Only a fully revealed answer, or a synthesized error
reply, is ever written to the conversation store, and it is written once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from .completion import CompletionClient
from .errors import DocumentSessionError, ExternalCollaboratorError, ValidationError
from .models import Message
from .storage import ConversationStore

logger = logging.getLogger(__name__)

EMPTY_ANSWER_MESSAGE = "Sorry, I couldn't generate a response."
TRANSPORT_ERROR_MESSAGE = "Error communicating with the AI."


class DeliveryState(str, Enum):
    PENDING = "pending"
    REVEALING = "revealing"
    PERSISTED = "persisted"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {DeliveryState.PERSISTED, DeliveryState.FAILED, DeliveryState.CANCELLED}


@dataclass
class DeliveryEvent:
    delivery_id: str
    conversation_id: str
    state: DeliveryState
    draft: str
    message: Optional[Message] = None


class Delivery:
    def __init__(self, conversation_id: str) -> None:
        self.id = str(uuid.uuid4())
        self.conversation_id = conversation_id
        self.state = DeliveryState.PENDING
        self.draft = ""
        self.message: Optional[Message] = None
        self.error: Optional[BaseException] = None
        self._cancel_requested = False
        self._done = asyncio.Event()
        self._subscribers: List[asyncio.Queue] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> DeliveryEvent:
        return DeliveryEvent(
            delivery_id=self.id,
            conversation_id=self.conversation_id,
            state=self.state,
            draft=self.draft,
            message=self.message,
        )

    def cancel(self) -> bool:
        """Abandon the draft. Returns False when the delivery already finished."""
        if self.done:
            return False
        self._cancel_requested = True
        self._finish(DeliveryState.CANCELLED)
        return True

    def _publish(self) -> None:
        event = self.snapshot()
        for queue in self._subscribers:
            queue.put_nowait(event)

    def _set_state(self, state: DeliveryState) -> None:
        self.state = state
        self._publish()

    def _finish(
        self,
        state: DeliveryState,
        *,
        message: Optional[Message] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self.done:
            return
        self.message = message
        self.error = error
        self._set_state(state)
        self._done.set()

    async def wait(self) -> Optional[Message]:
        """Wait for a terminal state.

        Returns the persisted message (the answer, or the synthesized error
        reply for ``FAILED``), ``None`` when cancelled, and re-raises a
        persistence failure.
        """
        await self._done.wait()
        if self.error is not None:
            raise self.error
        return self.message

    async def stream(self) -> AsyncIterator[DeliveryEvent]:
        """Yield the current snapshot, then every increment up to the terminal event."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self.snapshot()
            if self.done:
                return
            while True:
                event = await queue.get()
                yield event
                if event.state in TERMINAL_STATES:
                    return
        finally:
            self._subscribers.remove(queue)


class ResponseDeliveryController:
    """Single writer of assistant replies for every conversation it serves.

    At most one delivery per conversation is live; starting another cancels
    the previous one.
    """

    def __init__(
        self,
        store: ConversationStore,
        completion: CompletionClient,
        *,
        reveal_interval: float = 0.02,
        reveal_chunk: int = 1,
        completion_timeout: Optional[float] = None,
    ) -> None:
        if reveal_interval < 0:
            raise ValidationError("reveal_interval must not be negative")
        if reveal_chunk < 1:
            raise ValidationError("reveal_chunk must be at least 1")
        self.store = store
        self.completion = completion
        self.reveal_interval = reveal_interval
        self.reveal_chunk = reveal_chunk
        self.completion_timeout = completion_timeout
        self.active_conversation_id: Optional[str] = None
        self._live: Dict[str, Delivery] = {}

    def get_delivery(self, conversation_id: str) -> Optional[Delivery]:
        return self._live.get(conversation_id)

    def _track(self, delivery: Delivery) -> None:
        self.cancel(delivery.conversation_id)
        self._live[delivery.conversation_id] = delivery

    def _untrack(self, delivery: Delivery) -> None:
        if self._live.get(delivery.conversation_id) is delivery:
            del self._live[delivery.conversation_id]

    def cancel(self, conversation_id: str) -> bool:
        delivery = self._live.pop(conversation_id, None)
        if delivery is None:
            return False
        cancelled = delivery.cancel()
        if cancelled:
            logger.info("Cancelled delivery %s for conversation %s", delivery.id, conversation_id)
        return cancelled

    def activate(self, conversation_id: str) -> None:
        """Make ``conversation_id`` the one on screen, abandoning the previous one's draft."""
        previous = self.active_conversation_id
        if previous is not None and previous != conversation_id:
            self.cancel(previous)
        self.active_conversation_id = conversation_id

    async def close(self) -> None:
        deliveries = list(self._live.values())
        for conversation_id in list(self._live):
            self.cancel(conversation_id)
        tasks = [delivery._task for delivery in deliveries if delivery._task is not None]
        # Abandon in-flight completion calls of cancelled deliveries.
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.active_conversation_id = None

    def start(self, conversation_id: str, answer: str) -> Delivery:
        """Reveal an already known answer. Must be called from a running event loop."""
        if not answer:
            raise ValidationError("answer must not be empty")
        delivery = Delivery(conversation_id)
        self._track(delivery)
        delivery._task = asyncio.get_running_loop().create_task(self._run_reveal(delivery, answer))
        return delivery

    async def submit(self, conversation_id: str, content: str, prompt: Optional[str] = None) -> Delivery:
        """Persist the user's message and deliver the completion's answer to it."""
        self.store.append_message(conversation_id, "user", content)
        delivery = Delivery(conversation_id)
        self._track(delivery)
        delivery._task = asyncio.get_running_loop().create_task(
            self._run_completion(delivery, prompt or content)
        )
        return delivery

    async def _run_completion(self, delivery: Delivery, prompt: str) -> None:
        try:
            try:
                if self.completion_timeout is not None:
                    answer = await asyncio.wait_for(self.completion.complete(prompt), self.completion_timeout)
                else:
                    answer = await self.completion.complete(prompt)
            except (ExternalCollaboratorError, asyncio.TimeoutError) as exc:
                logger.warning("Completion failed for conversation %s: %s", delivery.conversation_id, exc)
                self._persist_failure(delivery, TRANSPORT_ERROR_MESSAGE)
                return
            except asyncio.CancelledError:
                delivery.cancel()
                raise
            except Exception:
                logger.exception("Completion client crashed for conversation %s", delivery.conversation_id)
                self._persist_failure(delivery, TRANSPORT_ERROR_MESSAGE)
                return

            if delivery.cancelled:
                return
            if not isinstance(answer, str) or not answer.strip():
                logger.warning("Completion returned no answer for conversation %s", delivery.conversation_id)
                self._persist_failure(delivery, EMPTY_ANSWER_MESSAGE)
                return
            await self._run_reveal(delivery, answer)
        finally:
            self._untrack(delivery)

    def _persist_failure(self, delivery: Delivery, text: str) -> None:
        try:
            if delivery.cancelled:
                return
            try:
                message = self.store.append_message(delivery.conversation_id, "assistant", text)
            except DocumentSessionError as exc:
                logger.warning("Unable to persist error reply for %s: %s", delivery.conversation_id, exc)
                delivery._finish(DeliveryState.FAILED, error=exc)
                return
            delivery.draft = text
            delivery._finish(DeliveryState.FAILED, message=message)
        finally:
            self._untrack(delivery)

    async def _run_reveal(self, delivery: Delivery, answer: str) -> None:
        try:
            if delivery.cancelled:
                return
            delivery._set_state(DeliveryState.REVEALING)
            position = 0
            while position < len(answer):
                await asyncio.sleep(self.reveal_interval)
                if delivery.cancelled:
                    return
                position = min(len(answer), position + self.reveal_chunk)
                delivery.draft = answer[:position]
                delivery._publish()

            if delivery.cancelled or delivery.draft != answer:
                return
            # No await between the final check and the write.
            try:
                message = self.store.append_message(delivery.conversation_id, "assistant", delivery.draft)
            except DocumentSessionError as exc:
                logger.warning("Unable to persist answer for %s: %s", delivery.conversation_id, exc)
                delivery._finish(DeliveryState.FAILED, error=exc)
                return
            delivery._finish(DeliveryState.PERSISTED, message=message)
            logger.info("Persisted answer %s for conversation %s", message.id, delivery.conversation_id)
        except asyncio.CancelledError:
            delivery.cancel()
            raise
        except Exception as exc:
            logger.exception("Reveal crashed for conversation %s", delivery.conversation_id)
            delivery._finish(DeliveryState.FAILED, error=exc)
        finally:
            self._untrack(delivery)
