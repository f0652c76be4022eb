"""Exchanges log heads with peers over pubsub and direct channels."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any

from orbitstores.events import EventNewPeer, EventWrite, SubscriptionClosed
from orbitstores.store import LOCAL_HEADS_KEY, REMOTE_HEADS_KEY, StoreError

_POLL_INTERVAL = 0.1


class ExchangeError(Exception):
    """Raised when heads cannot be exchanged."""


@dataclass
class PeerJoined:
    """A peer joined the store's topic."""

    peer: str


@dataclass
class PeerLeft:
    """A peer left the store's topic."""

    peer: str


class JSONMessageMarshaler:
    """Encodes head exchange messages as JSON."""

    def marshal(self, message: dict[str, Any]) -> bytes:
        return json.dumps(message, separators=(",", ":")).encode("utf-8")

    def unmarshal(self, data: bytes) -> dict[str, Any]:
        try:
            message = json.loads(data)
        except (ValueError, TypeError) as exc:
            raise ExchangeError(f"unable to unmarshal head entries: {exc}") from exc
        if not isinstance(message, dict):
            raise ExchangeError("unable to unmarshal head entries: not an object")
        return message


def _spawn(target: Any, *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class HeadsExchange:
    """Publishes new heads and syncs the heads that peers announce.

    The pubsub must provide ``topic_subscribe(name)`` returning a topic with
    ``peers()``, ``publish(payload)``, ``watch_peers()`` and ``watch_messages()``.
    The direct channel provides ``connect(peer)`` and ``send(peer, payload)``.
    """

    def __init__(self, store: Any) -> None:
        options = store.options
        self.store = store
        self.pubsub = options.pubsub if options.pubsub is not None else getattr(store.ipfs, "pubsub", None)
        if self.pubsub is None:
            raise ExchangeError("replication needs a pubsub")
        self.direct_channel = options.direct_channel
        self.marshaler = options.message_marshaler or JSONMessageMarshaler()
        self.topic: Any = None

    @property
    def _logger(self) -> Any:
        return self.store.logger

    def start(self) -> None:
        """Subscribe to the store's topic and start listening."""
        try:
            self.topic = self.pubsub.topic_subscribe(self.store.id)
        except Exception as exc:
            raise ExchangeError(f"unable to subscribe to pubsub: {exc}") from exc
        subscription = self.store.event_bus.subscribe(EventWrite)
        peers = self.topic.watch_peers()
        messages = self.topic.watch_messages()
        _spawn(self._write_loop, subscription)
        _spawn(self._peer_loop, peers)
        _spawn(self._message_loop, messages)

    def _write_loop(self, subscription: Any) -> None:
        try:
            while not self.store.closed:
                try:
                    event = subscription.get(timeout=_POLL_INTERVAL)
                except TimeoutError:
                    continue
                except SubscriptionClosed:
                    return
                _spawn(self._safe_handle_write, event)
        finally:
            subscription.close()

    def _safe_handle_write(self, event: EventWrite) -> None:
        try:
            self.handle_event_write(event)
        except Exception:
            self._logger.warning("unable to handle EventWrite", exc_info=True)

    def handle_event_write(self, event: EventWrite) -> bool:
        """Publish the written heads if the topic has peers; return whether it did."""
        if not event.heads:
            raise ExchangeError("'heads' are not defined")
        if self.topic is None:
            return False
        try:
            peers = list(self.topic.peers())
        except Exception as exc:
            raise ExchangeError(f"unable to get topic peers: {exc}") from exc
        if not peers:
            return False
        payload = self.marshaler.marshal(
            {"address": str(self.store.address), "heads": [head.to_json() for head in event.heads]}
        )
        try:
            self.topic.publish(payload)
        except Exception as exc:
            raise ExchangeError(f"unable to publish message on pubsub: {exc}") from exc
        return True

    def _peer_loop(self, events: Any) -> None:
        for event in events:
            if isinstance(event, PeerJoined):
                try:
                    self.store.event_bus.emit(EventNewPeer(peer=event.peer))
                except Exception:
                    self._logger.error("unable to emit event new peer", exc_info=True)
                _spawn(self.on_peer_joined, event.peer)
                self._logger.debug("peer %s joined %s", event.peer, self.store.address)
            elif isinstance(event, PeerLeft):
                self._logger.debug("peer %s left %s", event.peer, self.store.address)
            else:
                self._logger.debug("unhandled event, can't match type")

    def _message_loop(self, messages: Any) -> None:
        for content in messages:
            try:
                self.handle_message(content)
            except ExchangeError:
                self._logger.error("unable to unmarshal head entries", exc_info=True)

    def handle_message(self, content: bytes) -> int:
        """Sync the heads carried by a message; return how many were received."""
        message = self.marshaler.unmarshal(content)
        heads = message.get("heads") or []
        if not heads:
            self._logger.debug("Nothing to synchronize for %s", self.store.address)
            return 0
        entries = [self.store.ipfs.decode_entry(raw) for raw in heads]
        try:
            self.store.sync(entries)
        except StoreError:
            self._logger.debug("Error while syncing heads for %s", self.store.address, exc_info=True)
        return len(entries)

    def on_peer_joined(self, peer: str) -> None:
        """Send our heads to a peer that just joined."""
        try:
            self.exchange_heads(peer)
        except Exception:
            self._logger.error("unable to exchange heads", exc_info=True)

    def exchange_heads(self, peer: str) -> None:
        """Connect to a peer and send it the cached local and remote heads."""
        if self.direct_channel is None:
            raise ExchangeError("replication needs DirectChannel")
        try:
            self.direct_channel.connect(peer)
        except Exception as exc:
            raise ExchangeError(f"unable to connect to peer: {exc}") from exc

        heads: list[Any] = []
        for key in (LOCAL_HEADS_KEY, REMOTE_HEADS_KEY):
            raw = self.store.cache.get(key)
            if not raw:
                continue
            try:
                decoded = json.loads(raw)
            except ValueError:
                self._logger.warning("unable to unmarshal cached heads", exc_info=True)
                continue
            if isinstance(decoded, list):
                heads.extend(decoded)

        payload = self.marshaler.marshal({"address": self.store.id, "heads": heads})
        try:
            self.direct_channel.send(peer, payload)
        except Exception as exc:
            raise ExchangeError(f"unable to send heads on direct channel: {exc}") from exc