"""
Connection manager: owns the single active link to the indicator.

    idle -> connecting -> connected -> (stale | error) -> idle

One bounded attempt per connect() call, no background retry loop. Only this
class writes to or closes the active transport; codecs and the normalizer
just get handed the text it reads.
"""
from __future__ import annotations
import asyncio
import contextlib
import logging
import time
from typing import Callable, Iterator, List, Optional, Set

from .codecs import AdiClient, Frame, FrameKind, LineFramer, ReadingCandidate, StreamCodec, stream_codec
from .codecs.base import Channel
from .codecs.scp import format_command
from .errors import ProtocolError, ScaleLinkError, TransportError, TransportErrorKind
from .events import READING, STATUS_CHANGED, EventBus, Subscription
from .models import Config, ConnectionConfig, ConnectionStatus, Endpoint, ScaleReading
from .normalizer import ReadingNormalizer
from .transports import ManualTransport, Transport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]
AdiFactory = Callable[[ConnectionConfig], AdiClient]


class ConnectionManager:
    def __init__(
        self,
        settings: Config,
        bus: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
        adi_factory: Optional[AdiFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.bus = bus or EventBus()
        self._transport_factory = transport_factory or self._default_transport
        self._adi_factory = adi_factory or self._default_adi
        self._clock = clock
        self.normalizer = self._new_normalizer(settings)

        self._status = ConnectionStatus()
        self._config: Optional[ConnectionConfig] = None
        self._transport: Optional[Transport] = None
        self._adi: Optional[AdiClient] = None
        self._codec: Optional[StreamCodec] = None
        self._framer: Optional[LineFramer] = None
        self._input_mode = "device"

        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._listeners: List["asyncio.Queue[Frame]"] = []
        self._reading_seen: Optional[asyncio.Event] = None
        self._held: Optional[List[ReadingCandidate]] = None
        self._held_skip: Optional[str] = None
        self._connecting = False
        self._connect_task: Optional[asyncio.Task] = None
        self._aborted = False
        self._drop_error: Optional[TransportError] = None
        self._last_data_at: Optional[float] = None
        self._last_reading: Optional[ScaleReading] = None
        self._last_adi_raw: Optional[str] = None

    # -- construction helpers ---------------------------------------------

    def _default_transport(self, kind: str) -> Transport:
        return create_transport(kind, demo_mode=self.settings.demo_mode,
                                connect_timeout=self.settings.connect_timeout_s)

    def _default_adi(self, config: ConnectionConfig) -> AdiClient:
        return AdiClient(config.host, config.port, timeout=self.settings.connect_timeout_s)

    @staticmethod
    def _new_normalizer(settings: Config) -> ReadingNormalizer:
        return ReadingNormalizer(
            dedupe_window_s=settings.dedupe_window_s,
            dedupe_tolerance_kg=settings.dedupe_tolerance_kg,
            max_weight_kg=settings.max_weight_kg,
            require_id=settings.require_id,
        )

    def update_settings(self, settings: Config) -> None:
        """New timings and normalizer limits; the active link is left alone."""
        self.settings = settings
        self.normalizer = self._new_normalizer(settings)

    # -- queries ----------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self._status.model_copy()

    @property
    def config(self) -> Optional[ConnectionConfig]:
        return self._config

    @property
    def last_reading(self) -> Optional[ScaleReading]:
        return self._last_reading

    @property
    def adi(self) -> Optional[AdiClient]:
        return self._adi

    @property
    def connecting(self) -> bool:
        return self._connecting

    def is_receiving(self, window: Optional[float] = None) -> bool:
        """True when the indicator sent something within `window` seconds."""
        if self._last_data_at is None:
            return False
        if window is None:
            window = self.settings.active_window_s
        return self._clock() - self._last_data_at <= window

    def on_reading(self, fn: Callable[[ScaleReading], None]) -> Subscription:
        return self.bus.subscribe(READING, fn)

    def on_status_changed(self, fn: Callable[[ConnectionStatus], None]) -> Subscription:
        return self.bus.subscribe(STATUS_CHANGED, fn)

    async def list_endpoints(self, transport: str) -> List[Endpoint]:
        return await self._transport_factory(transport).list_available()

    # -- status -----------------------------------------------------------

    def _publish_status(self, status: ConnectionStatus) -> None:
        self._status = status
        logger.info(f"Scale link {status.state}"
                    + (f" ({status.error}: {status.details})" if status.error else ""))
        self.bus.publish(STATUS_CHANGED, status.model_copy())

    def _set_error(self, config: ConnectionConfig, exc: ScaleLinkError) -> None:
        self._publish_status(ConnectionStatus(
            connected=False,
            state="error",
            transport=config.transport,
            protocol=config.protocol,
            target=config.target,
            last_response_raw=self._status.last_response_raw,
            error=exc.kind.value,
            details=exc.message,
            actionable=exc.actionable,
            last_reading_at=self._status.last_reading_at,
        ))

    # -- connect / disconnect ---------------------------------------------

    async def connect(self, config: ConnectionConfig) -> bool:
        """
        Make one bounded attempt to reach the indicator with `config`.

        Returns False, without touching the current link, when another attempt
        is still in flight. Failures end in the error state; the result is
        reported through status, never raised.
        """
        if self._connecting:
            logger.warning("Connect already in progress, ignoring new request")
            return False
        if (self._config == config and self._status.connected
                and self.is_receiving(self.settings.active_window_s)):
            logger.info(f"Already receiving from {config.target}, keeping the current link")
            return True

        self._connecting = True
        self._aborted = False
        # disconnect() cancels this task, never the caller's
        self._connect_task = asyncio.create_task(self._attempt(config))
        try:
            return await self._connect_task
        finally:
            self._connecting = False
            self._connect_task = None

    async def _attempt(self, config: ConnectionConfig) -> bool:
        try:
            await self._release()
            self._config = config
            self._drop_error = None
            self._last_data_at = None
            self._last_adi_raw = None
            self.normalizer.reset()
            self._publish_status(ConnectionStatus(
                state="connecting",
                transport=config.transport,
                protocol=config.protocol,
                target=config.target,
            ))
            raw = await self._establish(config)
        except asyncio.TimeoutError:
            await self._release()
            self._set_error(config, TransportError(
                TransportErrorKind.TIMEOUT,
                f"No answer from {config.target} within {self.settings.connect_timeout_s:g}s",
            ))
            return False
        except ScaleLinkError as exc:
            await self._release()
            self._set_error(config, exc)
            return False
        except asyncio.CancelledError:
            await self._release()
            if self._aborted:
                logger.info(f"Connect to {config.target} aborted")
                return False
            raise
        except Exception as exc:
            logger.exception(f"Unexpected failure connecting to {config.target}")
            await self._release()
            self._set_error(config, TransportError(TransportErrorKind.UNAVAILABLE, str(exc)))
            return False

        self._publish_status(ConnectionStatus(
            connected=True,
            state="connected",
            transport=config.transport,
            protocol=config.protocol,
            target=config.target,
            input_mode=self._input_mode,
            last_response_raw=raw or self._status.last_response_raw,
            last_reading_at=self._status.last_reading_at,
        ))
        self._flush_held()
        self._start_tasks()
        return True

    async def disconnect(self) -> None:
        """Tear everything down and return to idle. Safe from any state."""
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            self._aborted = True
            task.cancel()
            await asyncio.wait([task])
        if self._status.state == "idle" and self._transport is None and self._adi is None:
            return
        await self._release()
        self._config = None
        self._last_data_at = None
        self._publish_status(ConnectionStatus())

    async def _release(self) -> None:
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Background task failed during teardown")
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:
                logger.warning(f"Error closing {transport.name} transport: {exc}")
        adi, self._adi = self._adi, None
        if adi is not None:
            try:
                await adi.close()
            except Exception as exc:
                logger.warning(f"Error closing ADI client: {exc}")
        self._codec = None
        self._framer = None
        self._input_mode = "device"
        self._held = None
        self._held_skip = None

    async def _establish(self, config: ConnectionConfig) -> str:
        if config.protocol == "adi" and not self.settings.demo_mode:
            return await self._open_adi(config)
        # the simulator only speaks SCP and ASCII
        protocol = "scp" if config.protocol == "adi" else config.protocol
        codec = stream_codec(protocol, self.settings.scp_poll_command)
        self._codec = codec
        self._framer = codec.new_framer()
        transport = self._transport_factory(config.transport)
        self._transport = transport
        try:
            await asyncio.wait_for(
                transport.open(config, self._on_data, self._on_transport_closed),
                timeout=self.settings.connect_timeout_s,
            )
        except TransportError as exc:
            if (config.transport == "serial" and exc.kind == TransportErrorKind.UNAVAILABLE
                    and self.settings.manual_fallback):
                logger.warning(f"Serial unavailable ({exc.message}), falling back to manual input")
                await transport.close()
                return await self._open_manual(config)
            raise
        return await self._handshake(config, codec)

    async def _open_adi(self, config: ConnectionConfig) -> str:
        client = self._adi_factory(config)
        self._adi = client
        body = await asyncio.wait_for(client.connect(), timeout=self.settings.connect_timeout_s)
        self._mark_data()
        return body.strip()[:200]

    async def _open_manual(self, config: ConnectionConfig) -> str:
        transport = ManualTransport()
        self._transport = transport
        await transport.open(config, self._on_data, self._on_transport_closed)
        self._input_mode = "manual"
        return ""

    async def _handshake(self, config: ConnectionConfig, codec: StreamCodec) -> str:
        """
        Run the codec handshake. Readings that arrive meanwhile are held back
        and released once connected, minus the reply that served as proof
        ({VM} answers [13], which reads like a weight).
        """
        timeout = self.settings.connect_timeout_s
        self._reading_seen = asyncio.Event()
        self._held = []
        try:
            with self._listen() as frames:
                channel = Channel(self._send_raw, frames)
                proof = await asyncio.wait_for(codec.handshake(channel, timeout), timeout=timeout)
            self._held_skip = proof or None
            return proof
        except asyncio.TimeoutError:
            if self._drop_error is not None:
                raise self._drop_error
            # Devices in streaming mode ignore commands but push readings
            logger.info(f"No handshake reply from {config.target}, "
                        f"listening {self.settings.passive_wait_s:g}s for pushed data")
            try:
                await asyncio.wait_for(self._reading_seen.wait(), timeout=self.settings.passive_wait_s)
            except asyncio.TimeoutError:
                if self._drop_error is not None:
                    raise self._drop_error
                raise
            return self._status.last_response_raw or ""
        finally:
            self._reading_seen = None

    def _flush_held(self) -> None:
        held, self._held = self._held or [], None
        skip, self._held_skip = self._held_skip, None
        for candidate in held:
            if skip is not None and candidate.raw == skip:
                continue
            self._accept(candidate)

    # -- background tasks -------------------------------------------------

    def _start_tasks(self) -> None:
        if self._input_mode == "manual":
            return
        self._tasks.append(asyncio.create_task(self._watchdog()))
        if self._adi is not None or (self._codec is not None and self._codec.poll_command()):
            self._tasks.append(asyncio.create_task(self._poll_loop()))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.poll_interval_s)
            try:
                if self._adi is not None:
                    await self._poll_adi(self._adi)
                elif self._codec is not None:
                    command = self._codec.poll_command()
                    if command:
                        await self._send_raw(command)
            except TransportError as exc:
                await self._fail(exc)
                return
            except ProtocolError as exc:
                if exc.actionable:
                    await self._fail(exc)
                    return
                logger.warning(f"Poll failed: {exc}")

    async def _poll_adi(self, client: AdiClient) -> None:
        candidate = await client.get_live_weight()
        self._mark_data()
        if candidate is None:
            return
        # the indicator keeps returning the last stored record
        if candidate.raw == self._last_adi_raw:
            return
        self._last_adi_raw = candidate.raw
        self._status.last_response_raw = candidate.raw[:200]
        self._accept(candidate)

    async def _watchdog(self) -> None:
        liveness = self.settings.liveness_timeout_s
        interval = max(0.01, min(1.0, liveness / 4))
        while True:
            await asyncio.sleep(interval)
            if self._status.state == "connected" and not self.is_receiving(liveness):
                logger.warning(f"No data from the indicator for {liveness:g}s, marking stale")
                self._publish_status(self._status.model_copy(update={"state": "stale"}))

    async def _fail(self, exc: ScaleLinkError) -> None:
        config = self._config
        logger.error(f"Scale link failed: {exc}")
        await self._release()
        if config is not None:
            self._set_error(config, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_transport_closed(self, error: Optional[TransportError]) -> None:
        error = error or TransportError(TransportErrorKind.UNREACHABLE, "Connection closed by the indicator")
        if self._connecting:
            self._drop_error = error
            return
        self._spawn(self._fail(error))

    # -- inbound data -----------------------------------------------------

    @contextlib.contextmanager
    def _listen(self) -> Iterator["asyncio.Queue[Frame]"]:
        queue: "asyncio.Queue[Frame]" = asyncio.Queue()
        self._listeners.append(queue)
        try:
            yield queue
        finally:
            self._listeners.remove(queue)

    def _mark_data(self, raw: Optional[str] = None) -> None:
        self._last_data_at = self._clock()
        if raw:
            self._status.last_response_raw = raw
        if self._status.state == "stale":
            logger.info("Data flowing again")
            self._publish_status(self._status.model_copy(update={"state": "connected"}))

    def _on_data(self, chunk: bytes) -> None:
        if self._codec is None or self._framer is None:
            return
        text = chunk.decode(self._codec.encoding, errors="replace")
        for line in self._framer.feed(text):
            self._handle_frame(line)

    def _handle_frame(self, text: str) -> None:
        codec = self._codec
        if codec is None:
            return
        logger.debug(f"<< {text!r}")
        self._mark_data(text)
        frame = codec.decode(text)
        for queue in self._listeners:
            queue.put_nowait(frame)
        if frame.kind == FrameKind.READING and frame.candidate is not None:
            if self._reading_seen is not None and frame.candidate.weight is not None:
                self._reading_seen.set()
            if self._held is not None:
                self._held.append(frame.candidate)
            else:
                self._accept(frame.candidate)
        elif frame.kind == FrameKind.DEVICE_ERROR:
            logger.warning(f"Indicator reported error code {frame.code} for {frame.raw!r}")
        elif frame.kind == FrameKind.UNRECOGNIZED:
            logger.debug(f"Unrecognized frame {frame.raw!r}")

    def _accept(self, candidate: ReadingCandidate) -> None:
        reading = self.normalizer.accept(candidate)
        if reading is None:
            return
        self._last_reading = reading
        self._status.last_reading_at = reading.timestamp
        self.bus.publish(READING, reading)

    # -- outbound ---------------------------------------------------------

    async def _send_raw(self, data: bytes) -> None:
        if self._transport is None:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "Not connected")
        logger.debug(f">> {data!r}")
        await self._transport.send(data)

    async def send_command(self, command: str, timeout: float = 2.0) -> Optional[str]:
        """
        Send one SCP command over the active link and return the next reply.
        In manual mode there is nobody to answer, so None comes back.
        A malformed command raises ValueError.
        """
        data = format_command(command)
        if self._transport is None or not self._status.connected:
            raise TransportError(TransportErrorKind.UNAVAILABLE, "Not connected")
        if self._input_mode == "manual":
            await self._send_raw(data)
            return None
        with self._listen() as frames:
            channel = Channel(self._send_raw, frames)
            try:
                frame = await channel.request(data, timeout, accept=lambda f: True)
            except asyncio.TimeoutError:
                raise TransportError(TransportErrorKind.TIMEOUT, f"No reply to {data.decode()}") from None
        return frame.raw

    def feed_manual(self, text: str) -> None:
        """Push pasted indicator output through the active codec."""
        transport = self._transport
        if not isinstance(transport, ManualTransport):
            raise TransportError(TransportErrorKind.UNAVAILABLE, "Manual input is not active")
        transport.feed(text)
