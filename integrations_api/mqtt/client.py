"""Adapter MQTT por dispositivo.

Usa paho-mqtt para mantener UNA conexión al broker configurado en el Box,
suscribirse al topic y reenviar cada mensaje decodificado al pipeline de
ingesta.

Hilos:
- El hilo de red de paho (``loop_start``) sólo toca el event loop vía
  ``call_soon_threadsafe``.
- Una única tarea consumidora por dispositivo decodifica y reenvía en orden.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from ..errors import BrokerAuthError, BrokerConnectionError, MessageDecodeError
from ..ingestion.sink import IngestionSink
from ..metrics import MQTT_MESSAGES
from ..models.integrations import MqttConfig
from .connection_options import parse_broker_url, parse_connection_options, parse_json_object
from .decoders import decode_message
from .queue_config import QueueConfig
from .stats import AdapterStats

logger = logging.getLogger(__name__)

SUBSCRIBE_QOS = 1
DEFAULT_KEEPALIVE = 60

# CONNACK: 4/5 en MQTT 3.1.1, 134/135 como ReasonCode de paho 2
AUTH_FAILURE_CODES = {4, 5, 134, 135}

_STOP = object()

FatalCallback = Callable[["MQTTClientAdapter", Exception], None]


def default_client_factory(
    client_id: str,
    transport: str = "tcp",
    clean_session: Optional[bool] = None,
) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=clean_session,
        protocol=mqtt.MQTTv311,
        transport=transport,
        # Una desconexión inesperada es fatal; el coordinador decide el reintento.
        reconnect_on_failure=False,
    )


def _reason_value(reason_code: Any) -> int:
    return int(getattr(reason_code, "value", reason_code))


class MQTTClientAdapter:
    """Conexión MQTT saliente de un dispositivo.

    Uso:
        adapter = MQTTClientAdapter(device_id, config, sink, on_fatal=...)
        await adapter.connect()      # CONNACK + SUBACK
        ...
        await adapter.disconnect()   # idempotente
    """

    def __init__(
        self,
        device_id: str,
        config: MqttConfig,
        sink: IngestionSink,
        *,
        queue_config: Optional[QueueConfig] = None,
        keepalive: int = DEFAULT_KEEPALIVE,
        on_fatal: Optional[FatalCallback] = None,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        self.device_id = device_id
        self.config = config
        self._sink = sink
        self._queue_config = queue_config or QueueConfig()
        self._keepalive = keepalive
        self._on_fatal = on_fatal
        self._client_factory = client_factory or default_client_factory
        self._decode_options = parse_json_object(config.decode_options, "decodeOptions")

        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._connect_call: Optional[asyncio.Future] = None
        self._connack: Optional[asyncio.Future] = None
        self._suback: Optional[asyncio.Future] = None
        self._disconnect_ack: Optional[asyncio.Future] = None
        self._subscribe_mid: Optional[int] = None

        self._connected = False
        self._receiving = False
        self._closing = False
        self._closed = asyncio.Event()

        self._stats = AdapterStats()

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Conecta al broker, suscribe el topic y arranca el consumidor.

        Si falla o se cancela, el llamador debe invocar ``disconnect()``
        para liberar el cliente.

        Raises:
            BrokerAuthError: el broker rechazó las credenciales
            BrokerConnectionError: URL inválida, broker inalcanzable o suscripción rechazada
        """
        if self._closing:
            raise BrokerConnectionError(f"Adapter for device {self.device_id} is closed")

        params = parse_broker_url(self.config.url)
        options = parse_connection_options(self.config.connection_options)

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._connack = loop.create_future()
        self._suback = loop.create_future()
        self._queue = asyncio.Queue(maxsize=self._queue_config.max_queue_size)
        self._receiving = True

        client_id = options.client_id or f"integrations-{self.device_id}-{int(time.time())}"
        client = self._client_factory(
            client_id=client_id,
            transport=params.transport,
            clean_session=options.clean_session,
        )
        self._client = client

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message

        username = options.username or params.username
        password = options.password or params.password
        if username:
            client.username_pw_set(username, password)
        if params.transport == "websockets":
            client.ws_set_options(path=params.path)

        logger.info(
            "[MQTT] device=%s connecting to %s (%s) topic=%s",
            self.device_id,
            params.address,
            params.transport,
            self.config.topic,
        )

        # connect() bloquea en DNS/TCP: fuera del event loop
        self._connect_call = asyncio.ensure_future(
            asyncio.to_thread(client.connect, params.host, params.port, options.keepalive or self._keepalive)
        )
        try:
            await asyncio.shield(self._connect_call)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(f"Broker {params.address} unreachable: {e}") from e

        client.loop_start()

        await self._connack
        await self._suback

        self._connected = True
        self._consumer = loop.create_task(self._consume(), name=f"mqtt-consumer-{self.device_id}")
        logger.info("[MQTT] device=%s subscribed to %s", self.device_id, self.config.topic)

    async def disconnect(self) -> None:
        """Desconecta del broker y termina el consumidor.

        Los mensajes recibidos antes del DISCONNECT se reenvían antes de
        terminar; los posteriores se descartan. Idempotente.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True

        try:
            if self._connect_call is not None and not self._connect_call.done():
                await asyncio.wait({self._connect_call})

            client = self._client
            if client is not None:
                if self._connected and self._loop is not None:
                    self._disconnect_ack = self._loop.create_future()
                    client.disconnect()
                    await self._disconnect_ack
                self._receiving = False
                await asyncio.to_thread(self._stop_client, client)

            self._connected = False
            self._receiving = False

            if self._consumer is not None and self._queue is not None:
                await self._queue.put(_STOP)
                await self._consumer

            logger.info("[MQTT] device=%s disconnected. %s", self.device_id, self._stats)
        finally:
            self._connected = False
            self._closed.set()

    def abort(self) -> None:
        """Cierre forzado sin esperar (p.ej. tras timeout del disconnect)."""
        self._closing = True
        self._connected = False
        self._receiving = False
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        if self._client is not None and self._loop is not None:
            self._loop.run_in_executor(None, self._stop_client, self._client)
        self._closed.set()

    def _stop_client(self, client: Any) -> None:
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as e:
            logger.warning("[MQTT] device=%s disconnect error: %s", self.device_id, e)

    # ------------------------------------------------------------------
    # Callbacks de paho (hilo de red)
    # ------------------------------------------------------------------

    def _call_in_loop(self, fn: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # event loop cerrado durante el shutdown
            logger.debug("[MQTT] device=%s loop closed, dropping callback", self.device_id)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback de conexión."""
        rc = _reason_value(reason_code)
        if rc == 0:
            result, mid = client.subscribe(self.config.topic, qos=SUBSCRIBE_QOS)
            self._subscribe_mid = mid
            self._call_in_loop(self._set_future, self._connack, None)
            if result != 0:
                self._call_in_loop(
                    self._set_future,
                    self._suback,
                    BrokerConnectionError(f"Subscribe to {self.config.topic} failed: rc={result}"),
                )
            return

        if rc in AUTH_FAILURE_CODES:
            error: Exception = BrokerAuthError(f"Broker rejected credentials: rc={rc}", reason_code=rc)
        else:
            error = BrokerConnectionError(f"Broker refused connection: rc={rc}")
        self._call_in_loop(self._set_future, self._connack, error)

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties=None):
        """Callback de SUBACK."""
        if mid != self._subscribe_mid:
            return
        codes = [_reason_value(rc) for rc in (reason_codes or [])]
        failed = [rc for rc in codes if rc >= 0x80]
        if failed:
            rc = failed[0]
            if rc in AUTH_FAILURE_CODES:
                error: Optional[Exception] = BrokerAuthError(
                    f"Not authorized to subscribe to {self.config.topic}", reason_code=rc
                )
            else:
                error = BrokerConnectionError(f"Subscription to {self.config.topic} rejected: rc={rc}")
        else:
            error = None
        self._call_in_loop(self._set_future, self._suback, error)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback de desconexión."""
        self._call_in_loop(self._handle_disconnect, _reason_value(reason_code))

    def _on_message(self, client, userdata, msg):
        """Callback de mensaje - sólo encola en el event loop."""
        self._call_in_loop(self._enqueue, msg.topic, bytes(msg.payload), time.time())

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    @staticmethod
    def _set_future(future: Optional[asyncio.Future], error: Optional[Exception]) -> None:
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(None)

    def _handle_disconnect(self, rc: int) -> None:
        self._set_future(self._disconnect_ack, None)

        if self._connack is not None and not self._connack.done():
            self._set_future(self._connack, BrokerConnectionError(f"Connection closed during handshake: rc={rc}"))
            return
        if self._suback is not None and not self._suback.done():
            self._set_future(self._suback, BrokerConnectionError(f"Connection closed before SUBACK: rc={rc}"))
            return

        was_connected = self._connected
        self._connected = False
        if self._closing or not was_connected:
            return

        logger.warning("[MQTT] device=%s unexpected disconnect (rc=%d)", self.device_id, rc)
        if self._on_fatal is not None:
            self._on_fatal(self, BrokerConnectionError(f"Unexpected disconnect from broker: rc={rc}"))

    def _enqueue(self, topic: str, payload: bytes, received_at: float) -> None:
        if not self._receiving or self._queue is None:
            return

        self._stats.received += 1
        item = (topic, payload, received_at)
        try:
            self._queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            pass

        self._stats.dropped += 1
        MQTT_MESSAGES.labels(status="dropped").inc()
        if self._queue_config.drop_oldest:
            self._queue.get_nowait()
            self._queue.put_nowait(item)
            logger.debug("[MQTT] device=%s backpressure: dropped oldest message", self.device_id)
        else:
            logger.debug("[MQTT] device=%s backpressure: dropped newest message", self.device_id)

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            await self._process(*item)

    async def _process(self, topic: str, payload: bytes, received_at: float) -> None:
        try:
            decoded = decode_message(self.config.message_format, payload, self._decode_options)
        except MessageDecodeError as e:
            self._stats.decode_errors += 1
            MQTT_MESSAGES.labels(status="decode_error").inc()
            logger.warning("[MQTT] device=%s dropped message on %s: %s", self.device_id, topic, e)
            return

        try:
            submitted = await self._sink.submit_reading(self.device_id, decoded, received_at)
        except Exception as e:
            submitted = False
            logger.exception("[MQTT] device=%s ingestion handoff failed: %s", self.device_id, e)

        self._stats.last_message_at = received_at
        if submitted:
            self._stats.forwarded += 1
            MQTT_MESSAGES.labels(status="forwarded").inc()
        else:
            self._stats.sink_failures += 1
            MQTT_MESSAGES.labels(status="sink_failed").inc()

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def stats(self) -> dict:
        return {
            "device_id": self.device_id,
            "connected": self._connected,
            "topic": self.config.topic,
            "message_format": self.config.message_format.value,
            "queue_depth": self.queue_depth,
            "queue_max": self._queue_config.max_queue_size,
            **self._stats.to_dict(),
        }

    def health_check(self) -> dict:
        return {
            "healthy": self._connected and not self._closing,
            "connected": self._connected,
            "closing": self._closing,
            "messages_forwarded": self._stats.forwarded,
            "decode_errors": self._stats.decode_errors,
            "dropped": self._stats.dropped,
        }
