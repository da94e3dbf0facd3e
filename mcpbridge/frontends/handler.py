"""
Chat handler - the event pump between a front end and the bridge.

The pump runs on one thread. For each accepted message it checks access,
appends the user turn to history and then hands the rest of the turn to a
worker thread, so turns within one conversation are recorded in arrival
order while slow LLM and tool calls run concurrently.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, List, Optional

from mcpbridge.core.errors import BridgeError, OperationTimeout, user_message
from mcpbridge.core.history import ROLE_USER, ConversationKey, HistoryStore, Message
from mcpbridge.core.lifecycle import Snapshot
from mcpbridge.frontends.base import ChatEvent, EventKind, UserFrontend

logger = logging.getLogger(__name__)

IGNORED_SUBTYPES = ("message_changed", "message_deleted", "bot_message")
POLL_INTERVAL = 0.5


class ChatHandler:
    """
    Pump events from ``frontend`` into the bridge of the current snapshot.

    Args:
        frontend: Source of events and sink for replies.
        snapshot: Returns the snapshot to use for a new turn.
        history: Conversation history shared across snapshots.
        max_workers: Upper bound on concurrent bridge calls.
    """

    def __init__(
        self,
        frontend: UserFrontend,
        snapshot: Callable[[], Snapshot],
        history: HistoryStore,
        max_workers: int = 32,
    ):
        self.frontend = frontend
        self._snapshot = snapshot
        self.history = history
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bridge")
        self._workers: List[threading.Thread] = []

    # ── Event pump ────────────────────────────────────────────────────────

    def serve(self, stop: Optional[threading.Event] = None) -> None:
        """Process events until the front end disconnects or ``stop`` is set."""
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                event = self.frontend.events.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
            if event.kind == EventKind.DISCONNECTED:
                logger.info("%s front end disconnected", self.frontend.name)
                return
            self.dispatch(event)

    def dispatch(self, event: ChatEvent) -> Optional[threading.Thread]:
        """Route one event; returns the worker thread if a turn was started."""
        try:
            if event.kind == EventKind.CONNECTING:
                logger.info("Connecting to %s...", self.frontend.name)
            elif event.kind == EventKind.CONNECTED:
                logger.info("Connected to %s", self.frontend.name)
            elif event.kind == EventKind.MENTION:
                return self._accept(event, self.frontend.remove_bot_mention(event.text))
            elif event.kind == EventKind.MESSAGE:
                if self._should_ignore(event):
                    return None
                return self._accept(event, event.text.strip())
            else:
                logger.debug("Ignoring %s event", event.kind.value)
            return None
        finally:
            self.frontend.ack(event)

    def _should_ignore(self, event: ChatEvent) -> bool:
        if not event.is_direct:
            return True
        if event.bot_id or event.subtype in IGNORED_SUBTYPES:
            logger.debug("Ignoring %s message in %s", event.subtype or "bot", event.channel_id)
            return True
        return not event.user_id

    def _accept(self, event: ChatEvent, text: str) -> Optional[threading.Thread]:
        if not text:
            return None
        snapshot = self._lease()
        key = ConversationKey.for_message(event.channel_id, event.ts, event.thread_ts)

        decision = snapshot.security.check(event.user_id, event.channel_id)
        if not decision.allowed:
            snapshot.release()
            return self._spawn(self._reject, key, snapshot.security.rejection_message)

        try:
            profile = self.frontend.resolve_user(event.user_id)
        except Exception:
            snapshot.release()
            raise
        message = Message(
            role=ROLE_USER,
            content=text,
            platform_ts=event.ts,
            user_id=event.user_id,
            real_name=profile.real_name,
            email=profile.email,
        )
        self.history.add(key, message)
        return self._spawn(self._process, snapshot, key, message, bool(event.thread_ts))

    def _lease(self) -> Snapshot:
        while True:
            snapshot = self._snapshot()
            if snapshot.acquire():
                return snapshot

    def _spawn(self, target, *args) -> threading.Thread:
        worker = threading.Thread(target=target, args=args, name="chat-turn", daemon=True)
        self._workers = [w for w in self._workers if w.is_alive()]
        self._workers.append(worker)
        worker.start()
        return worker

    # ── Turn processing ───────────────────────────────────────────────────

    def _reject(self, key: ConversationKey, rejection: str) -> None:
        posted = self.frontend.post_message(key.channel_id, key.thread_ts, rejection)
        if posted:
            self.history.ignore(key, posted)

    def _process(self, snapshot: Snapshot, key: ConversationKey, message: Message, in_thread: bool) -> None:
        try:
            self._run_turn(snapshot, key, message, in_thread)
        finally:
            snapshot.release()

    def _run_turn(self, snapshot: Snapshot, key: ConversationKey, message: Message, in_thread: bool) -> None:
        timeouts = snapshot.config.timeouts
        thinking_text = snapshot.config.slack.thinking_message

        if in_thread:
            self._reconcile(key, timeouts.response_processing_timeout)

        thinking = self.frontend.post_message(key.channel_id, key.thread_ts, thinking_text)
        try:
            reply = self._ask(snapshot, key, message, timeouts.bridge_operation_timeout)
        finally:
            if thinking:
                self.frontend.delete_thinking(key.channel_id, key.thread_ts, thinking_text)
        posted = self.frontend.post_message(key.channel_id, key.thread_ts, reply)
        if posted and not self.history.stamp(key, reply, posted):
            # Error and timeout replies have no history entry.
            self.history.ignore(key, posted)

    def _reconcile(self, key: ConversationKey, timeout: float) -> None:
        future = self._executor.submit(self.frontend.fetch_thread_replies, key.channel_id, key.thread_ts)
        try:
            replies = future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning("Timed out fetching thread replies for %s", key)
            return
        added = self.history.reconcile(key, replies)
        if added:
            logger.debug("Reconciled %d thread replies into %s", added, key)

    def _ask(self, snapshot: Snapshot, key: ConversationKey, message: Message, timeout: float) -> str:
        cancel = threading.Event()
        profile = {"user_id": message.user_id, "real_name": message.real_name, "email": message.email}

        def notify(notice: str) -> None:
            posted = self.frontend.post_notice(key.channel_id, key.thread_ts, notice)
            if posted:
                self.history.ignore(key, posted)

        future = self._executor.submit(
            snapshot.bridge.handle_prompt,
            message.content,
            key,
            profile=profile,
            current=message,
            cancel=cancel,
            notify=notify,
        )
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            cancel.set()
            logger.error("Bridge operation timed out after %.0fs for %s", timeout, key)
            return user_message(OperationTimeout("bridge operation timed out"))
        except BridgeError as exc:
            logger.error("Bridge failed for %s: %s", key, exc)
            return user_message(exc)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for running turns to finish."""
        for worker in list(self._workers):
            worker.join(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
