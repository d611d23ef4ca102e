"""Network observer: tracks connectivity and notifies subscribers on transitions."""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

StateCallback = Callable[[bool], None]
Probe = Callable[[], Awaitable[bool]]


class _Subscription:
    """A registered callback and the last state delivered to it."""

    __slots__ = ("callback", "last_delivered", "active")

    def __init__(self, callback: StateCallback, initial: bool) -> None:
        self.callback = callback
        self.last_delivered = initial
        self.active = True


class NetworkObserver:
    """Connectivity signal for the sync engine.

    The connectivity source is external: something calls ``set_online``
    (or ``watch`` polls a probe that does). Subscribers are notified only on
    real transitions, in order, and never twice for the same transition.
    """

    DEFAULT_PROBE_INTERVAL = 30.0

    def __init__(self, online: bool = True) -> None:
        """Initialize the observer.

        Args:
            online: Initial connectivity state.
        """
        self._online = online
        self._subscriptions: list[_Subscription] = []
        self._pending: deque[bool] = deque()
        self._delivering = False

    def is_online(self) -> bool:
        return self._online

    def on_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback invoked with the new state on each transition.

        Args:
            callback: Called as ``callback(is_online)``.

        Returns:
            A function that unsubscribes the callback. Calling it more than
            once is harmless.
        """
        subscription = _Subscription(callback, self._online)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription.active:
                subscription.active = False
                self._subscriptions.remove(subscription)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Feed a connectivity reading.

        A transition made by a subscriber during delivery is queued and
        delivered to every subscriber after the current one.

        Args:
            online: Current connectivity.

        Returns:
            True if this reading was a transition.
        """
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Network is now %s", "online" if online else "offline")

        self._pending.append(online)
        if self._delivering:
            # The outer call delivers it after the current transition
            return True
        self._delivering = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._delivering = False
        return True

    def _deliver(self, online: bool) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            # A subscriber registered mid-notification may already be current
            if subscription.last_delivered == online:
                continue
            subscription.last_delivered = online
            try:
                subscription.callback(online)
            except Exception:
                logger.exception("Network state subscriber %r failed", subscription.callback)

    async def watch(
        self,
        probe: Probe,
        interval: float = DEFAULT_PROBE_INTERVAL,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Poll ``probe`` and feed its result into ``set_online``.

        A probe that raises counts as offline. Runs until cancelled or until
        ``stop`` is set.

        Args:
            probe: Async callable returning True when the remote is reachable.
            interval: Seconds between probes.
            stop: Optional event that ends the loop.
        """
        while stop is None or not stop.is_set():
            try:
                online = await probe()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Connectivity probe failed: %s", e)
                online = False
            self.set_online(online)

            if stop is None:
                await asyncio.sleep(interval)
            else:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
