import logging
import os
import socket
import threading
from enum import Enum
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .config import Config
from .faults import FaultTracker
from .log import SERVICE_LOGGER
from .router import Router

log = logging.getLogger(SERVICE_LOGGER)

KEEPALIVE_SEC = 10
BACKOFF_START_SEC = 1
BACKOFF_MAX_SEC = 60


class ConnState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _reason_code_to_int(rc) -> int:
    if rc is None:
        return 0
    v = getattr(rc, "value", None)
    if isinstance(v, int):
        return v
    if isinstance(rc, int):
        return rc
    try:
        return int(rc)
    except (TypeError, ValueError):
        return -1


def default_client_id() -> str:
    return os.getenv("MQTT_CLIENT_ID") or f"mqtt-gpio-{socket.gethostname()}"


def make_client(client_id: Optional[str] = None) -> mqtt.Client:
    client = mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id or default_client_id(),
        clean_session=True,
    )
    user = os.getenv("MQTT_USER", "")
    # anonymous unless a user is given
    if user:
        client.username_pw_set(user, os.getenv("MQTT_PASS", ""))
    return client


class Connection:
    def __init__(
        self,
        config: Config,
        router: Router,
        client: Optional[mqtt.Client] = None,
        faults: Optional[FaultTracker] = None,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.config = config
        self.router = router
        self.client = client if client is not None else make_client()
        self._faults = faults or FaultTracker()
        self._stop_event = threading.Event()
        # interruptible by stop() unless a sleep is injected
        self._sleep = sleep or self._stop_event.wait
        self.state = ConnState.DISCONNECTED
        self.attempts = 0

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    # --------------------------------------------------------
    # connect / retry
    # --------------------------------------------------------
    def connect(self) -> bool:
        """
        Connect to the broker, retrying forever with exponential backoff
        (1s doubling up to 60s). Returns False only when stop() was called
        while retrying.
        """
        host, port = self.config.mqtt_host, self.config.mqtt_port
        delay = BACKOFF_START_SEC
        while not self._stop_event.is_set():
            self.state = ConnState.CONNECTING
            self.attempts += 1
            try:
                self.client.connect(host, port, keepalive=KEEPALIVE_SEC)
            except (OSError, ValueError) as e:
                self.state = ConnState.DISCONNECTED
                self._faults.raise_fault(
                    "MQTT_CONNECT", f"can't connect to broker:{host} port:{port} ({e})", logging.WARNING
                )
                log.debug(f"connect attempt {self.attempts} failed, retrying in {delay}s")
                self._sleep(delay)
                delay = min(delay * 2, BACKOFF_MAX_SEC)
                continue
            self._faults.clear_fault("MQTT_CONNECT")
            log.debug(f"connect request to {host}:{port} sent after {self.attempts} attempt(s)")
            return True
        return False

    def subscribe_all(self) -> int:
        ok = 0
        for topic, qos in self.config.topic_patterns():
            try:
                result, _mid = self.client.subscribe(topic, qos)
            except ValueError as e:
                log.error(f"can't subscribe to topic: '{topic}' ({e})")
                continue
            if result != mqtt.MQTT_ERR_SUCCESS:
                log.error(f"can't subscribe to topic: '{topic}' ({mqtt.error_string(result)})")
                continue
            log.info(f"subscribed to topic: '{topic}'")
            ok += 1
        return ok

    # --------------------------------------------------------
    # callbacks
    # --------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code=None, properties=None):
        rc = _reason_code_to_int(reason_code)
        if rc != 0:
            self.state = ConnState.DISCONNECTED
            self._faults.raise_fault("MQTT_CONNECT", f"MQTT connect refused rc={rc} ({reason_code})")
            return
        self.state = ConnState.CONNECTED
        self._faults.clear_fault("MQTT_CONNECT")
        self._faults.clear_fault("MQTT_DOWN")
        log.debug("connected!")
        self.subscribe_all()

    def _on_disconnect(self, client, userdata, disconnect_flags=None, reason_code=None, properties=None):
        self.state = ConnState.DISCONNECTED
        rc = _reason_code_to_int(reason_code)
        if rc != 0:
            self._faults.raise_fault("MQTT_DOWN", f"MQTT disconnected rc={rc}", logging.WARNING)
        else:
            log.debug("MQTT disconnected")

    def _on_message(self, client, userdata, msg):
        try:
            self.router.dispatch(msg.topic, msg.payload)
        except Exception:
            log.exception(f"dispatch failed for topic {msg.topic}")

    # --------------------------------------------------------
    # loop
    # --------------------------------------------------------
    def run_forever(self) -> None:
        if self._stop_event.is_set():
            return
        self.client.loop_forever(retry_first_connection=False)

    def stop(self) -> None:
        self._stop_event.set()
        self.client.disconnect()
