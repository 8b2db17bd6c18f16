"""Command Gateway: the bridge between the engine and manifold controllers.

Topics (one controller per manifold, addressed by its code):

    manifolds/{code}/command    engine -> device  {commandId, valveNumber, action, duration, timestamp}
    manifolds/{code}/ack        device -> engine  {commandId}
    manifolds/{code}/status     device -> engine  {valveNumber, status, timestamp}
                                                  or {valves: [{valveNumber, status}], timestamp}
    manifolds/{code}/telemetry  device -> engine  {valveNumber, metric, value, timestamp}
    manifolds/{code}/online     device -> engine  true / false

Dispatch is at-least-once: a command is republished with the same commandId
until acknowledged, with exponentially growing pauses, and reported to the
state machine as failed after DISPATCH_MAX_ATTEMPTS. Any inbound message
counts as a heartbeat; a controller silent for DEVICE_HEARTBEAT_TIMEOUT is
marked offline.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import settings
from core.clock import parse_timestamp, utcnow
from core.errors import DispatchFailed, StaleReport, StoreUnavailable, ValveEngineError
from models import AlarmMetric, CommandStatus, ValveStatus
from services.valve_store import ValveStore

if TYPE_CHECKING:
    from services.alarm_engine import AlarmEngine
    from services.state_machine import DispatchTicket, ValveStateMachine

logger = logging.getLogger("irrigation.gateway")

TOPIC_ROOT = "manifolds"


def command_topic(manifold_code: str) -> str:
    return f"{TOPIC_ROOT}/{manifold_code}/command"


# ---------------------------------------------------------------------------
# Device channel
# ---------------------------------------------------------------------------

class DeviceChannel(abc.ABC):
    """Transport to the manifold controllers."""

    @abc.abstractmethod
    async def publish(self, topic: str, payload: dict, qos: int = 1) -> None:
        ...

    @abc.abstractmethod
    def messages(self) -> AsyncIterator[tuple[str, Any]]:
        """Yield (topic, raw payload) for every inbound device message."""


class RedisDeviceChannel(DeviceChannel):
    """Device traffic relayed through Redis pub/sub (one channel per topic)."""

    PATTERN = f"{TOPIC_ROOT}/*"

    def __init__(self, redis: Redis):
        self.redis = redis

    async def publish(self, topic: str, payload: dict, qos: int = 1) -> None:
        await self.redis.publish(topic, json.dumps(payload))

    async def messages(self) -> AsyncIterator[tuple[str, Any]]:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.psubscribe(self.PATTERN)
            async for msg in pubsub.listen():
                if msg["type"] != "pmessage":
                    continue
                topic = msg["channel"]
                if isinstance(topic, bytes):
                    topic = topic.decode("utf-8")
                yield topic, msg["data"]
        finally:
            try:
                await pubsub.punsubscribe(self.PATTERN)
                await pubsub.close()
            except Exception:
                pass


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class CommandGateway:

    def __init__(
        self,
        channel: DeviceChannel,
        store: ValveStore,
        *,
        max_attempts: int | None = None,
        ack_timeout: float | None = None,
        retry_delay: float | None = None,
        heartbeat_timeout: float | None = None,
        presence_interval: float | None = None,
        qos: int | None = None,
    ):
        self.channel = channel
        self.store = store
        self.max_attempts = max_attempts or settings.DISPATCH_MAX_ATTEMPTS
        self.ack_timeout = ack_timeout or settings.DISPATCH_ACK_TIMEOUT
        self.retry_delay = settings.DISPATCH_RETRY_DELAY if retry_delay is None else retry_delay
        self.heartbeat_timeout = heartbeat_timeout or settings.DEVICE_HEARTBEAT_TIMEOUT
        self.presence_interval = presence_interval or settings.PRESENCE_CHECK_INTERVAL
        self.qos = settings.COMMAND_QOS if qos is None else qos
        self.state_machine: ValveStateMachine | None = None
        self.alarms: AlarmEngine | None = None
        self._acks: dict[str, asyncio.Event] = {}
        self._last_seen: dict[int, float] = {}
        self._online: dict[int, bool] = {}
        self._codes: dict[str, int] = {}
        self._running = False
        self._presence_task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        logger.info(
            "CommandGateway started (attempts=%d, ack timeout=%.1fs, heartbeat timeout=%.0fs)",
            self.max_attempts, self.ack_timeout, self.heartbeat_timeout,
        )
        self._presence_task = asyncio.create_task(self.monitor_presence())
        await self._listen()

    async def stop(self) -> None:
        self._running = False
        if self._presence_task is not None:
            self._presence_task.cancel()
        logger.info("CommandGateway stopped")

    def is_online(self, manifold_id: int) -> bool:
        return self._online.get(manifold_id, False)

    def forget_manifold(self, manifold_id: int) -> None:
        self._online.pop(manifold_id, None)
        self._last_seen.pop(manifold_id, None)
        self._codes = {code: mid for code, mid in self._codes.items() if mid != manifold_id}

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def dispatch(self, ticket: DispatchTicket) -> bool:
        """Publish until acknowledged or attempts run out."""
        topic = command_topic(ticket.manifold_code)
        payload = {
            "commandId": ticket.command_id,
            "valveNumber": ticket.valve_number,
            "action": ticket.action.value,
            "duration": ticket.duration,
            "timestamp": utcnow().isoformat() + "Z",
        }
        acked = self._acks.setdefault(ticket.command_id, asyncio.Event())
        reason = "no acknowledgment"
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    await self.channel.publish(topic, payload, self.qos)
                except (RedisError, ConnectionError, OSError) as exc:
                    reason = f"publish failed: {exc}"
                else:
                    await self._record(ticket.command_id, {
                        "attempts": attempt,
                        "sent_at": utcnow(),
                        "status": CommandStatus.SENT,
                    }, only_from=(CommandStatus.PENDING, CommandStatus.SENT))
                    if await self._wait(acked, self.ack_timeout):
                        return True
                    reason = f"no acknowledgment within {self.ack_timeout:g}s"

                logger.warning(
                    "Command %s to %s attempt %d/%d: %s",
                    ticket.command_id, topic, attempt, self.max_attempts, reason,
                )
                if attempt < self.max_attempts:
                    # A late ack during the pause still counts.
                    if await self._wait(acked, self.retry_delay * 2 ** (attempt - 1)):
                        return True
        finally:
            self._acks.pop(ticket.command_id, None)

        logger.error("DispatchFailed: command %s after %d attempts: %s",
                     ticket.command_id, self.max_attempts, reason)
        await self._record(ticket.command_id, {
            "status": CommandStatus.FAILED,
            "attempts": self.max_attempts,
            "error_message": reason[:300],
        }, only_from=(CommandStatus.PENDING, CommandStatus.SENT))
        if self.state_machine is not None:
            await self.state_machine.on_dispatch_failed(
                ticket.valve_id, ticket.command_id, DispatchFailed(reason),
            )
        return False

    @staticmethod
    async def _wait(event: asyncio.Event, timeout: float) -> bool:
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def acknowledge(self, command_id: str) -> None:
        """Mark a command acknowledged and stop its retries."""
        event = self._acks.get(command_id)
        if event is not None:
            if event.is_set():
                return
            event.set()
        await self._record(command_id, {
            "status": CommandStatus.ACKNOWLEDGED,
            "acknowledged_at": utcnow(),
        }, only_from=(CommandStatus.PENDING, CommandStatus.SENT))

    async def _record(self, command_id: str, values: dict, only_from=None) -> None:
        try:
            await self.store.update_command(command_id, values, only_from=only_from)
        except StoreUnavailable as exc:
            logger.warning("Command %s bookkeeping failed: %s", command_id, exc)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        while self._running:
            try:
                async for topic, raw in self.channel.messages():
                    if not self._running:
                        break
                    try:
                        await self.handle_message(topic, raw)
                    except (ValveEngineError, ValueError, KeyError, TypeError) as exc:
                        logger.warning("Dropped device message on %s: %s", topic, exc)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Device channel error: %s", exc)
                await asyncio.sleep(2)

    async def handle_message(self, topic: str, raw: Any) -> None:
        parts = topic.split("/")
        if len(parts) != 3 or parts[0] != TOPIC_ROOT:
            return
        _, code, kind = parts
        if kind == "command":
            return

        manifold_id = await self._resolve(code)
        if manifold_id is None:
            logger.debug("Message from unknown manifold '%s' ignored", code)
            return

        payload = _decode(raw)
        if kind == "online":
            online = payload is True or str(payload).strip().lower() in ("true", "1", "online")
            if online:
                self._last_seen[manifold_id] = time.monotonic()
            await self._set_presence(manifold_id, online)
            return

        await self._heartbeat(manifold_id)
        if not isinstance(payload, dict):
            logger.warning("Malformed %s payload from %s: %r", kind, code, payload)
            return

        if kind == "status":
            entries = payload.get("valves") or [payload]
            for entry in entries:
                await self._apply_report(manifold_id, entry, payload.get("timestamp"))
        elif kind == "telemetry":
            entries = payload.get("samples") or [payload]
            for entry in entries:
                await self._apply_telemetry(manifold_id, entry)
        elif kind == "ack":
            await self._apply_ack(payload.get("commandId"))

    async def _resolve(self, code: str) -> int | None:
        manifold_id = self._codes.get(code)
        if manifold_id is None:
            manifold = await self.store.get_manifold_by_code(code)
            if manifold is None:
                return None
            manifold_id = self._codes[code] = manifold.id
        return manifold_id

    async def _apply_report(self, manifold_id: int, entry: dict, default_ts: Any) -> None:
        valve = await self.store.get_valve_by_number(manifold_id, int(entry["valveNumber"]))
        if valve is None:
            logger.warning("Status for unknown valve %s on manifold %s", entry.get("valveNumber"), manifold_id)
            return
        status = ValveStatus(str(entry["status"]).upper())
        timestamp = parse_timestamp(entry.get("timestamp", default_ts)) or utcnow()
        try:
            await self.state_machine.apply_device_report(valve.id, status, timestamp)
        except StaleReport as exc:
            logger.warning("StaleReport discarded: %s", exc)

    async def _apply_telemetry(self, manifold_id: int, entry: dict) -> None:
        valve = await self.store.get_valve_by_number(manifold_id, int(entry["valveNumber"]))
        if valve is None:
            return
        await self.alarms.ingest_telemetry(valve.id, AlarmMetric(entry["metric"]), float(entry["value"]))

    async def _apply_ack(self, command_id: str | None) -> None:
        if not command_id:
            return
        command = await self.store.get_command(command_id)
        if command is None:
            logger.warning("Ack for unknown command %s", command_id)
            return
        await self.acknowledge(command_id)
        await self.state_machine.confirm_command(command.valve_id, command_id, command.action)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def _heartbeat(self, manifold_id: int) -> None:
        self._last_seen[manifold_id] = time.monotonic()
        if not self._online.get(manifold_id):
            await self._set_presence(manifold_id, True)

    async def _set_presence(self, manifold_id: int, online: bool) -> None:
        if self._online.get(manifold_id) == online:
            return
        self._online[manifold_id] = online
        if self.state_machine is not None:
            await self.state_machine.set_device_presence(
                manifold_id, online, last_seen_at=utcnow() if online else None,
            )

    async def monitor_presence(self) -> None:
        while self._running:
            await asyncio.sleep(self.presence_interval)
            try:
                await self.check_presence()
            except Exception as exc:
                logger.error("Presence check error: %s", exc, exc_info=True)

    async def check_presence(self, now: float | None = None) -> list[int]:
        """Mark silent controllers offline; returns the manifolds that went offline."""
        now = time.monotonic() if now is None else now
        went_offline = []
        for manifold_id, seen in list(self._last_seen.items()):
            if self._online.get(manifold_id) and now - seen > self.heartbeat_timeout:
                logger.warning("Manifold %s silent for %.0fs, marking offline", manifold_id, now - seen)
                await self._set_presence(manifold_id, False)
                went_offline.append(manifold_id)
        return went_offline


def _decode(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw
