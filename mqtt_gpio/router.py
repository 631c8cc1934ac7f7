import logging
from typing import Optional, Union

from .config import Config, link_matches
from .gpio import LineTable
from .log import SERVICE_LOGGER
from .supervisor import ProcessSupervisor

log = logging.getLogger(SERVICE_LOGGER)

PAYLOAD_ON = b"ON"
PAYLOAD_OFF = b"OFF"


def decode_payload(payload: Union[bytes, str, None]) -> Optional[bool]:
    if payload is None:
        return None
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    if payload == PAYLOAD_ON:
        return True
    if payload == PAYLOAD_OFF:
        return False
    return None


def topic_matches(topic: str, pattern: str) -> bool:
    return topic.startswith(pattern)


class Router:
    def __init__(self, config: Config, lines: LineTable, supervisor: ProcessSupervisor):
        self.config = config
        self.lines = lines
        self.supervisor = supervisor

    def dispatch(self, topic: str, payload: bytes) -> int:
        """
        Apply one inbound message. Returns the number of associations that
        matched (0 for unhandled payloads).
        """
        value = decode_payload(payload)
        if value is None:
            shown = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
            log.info(f"unhandled payload: '{shown}' on {topic}")
            return 0

        matched = 0
        for sub in self.config.subscriptions:
            if not topic_matches(topic, sub.topic_pattern):
                continue
            matched += 1
            effective = (not value) if sub.invert else value
            log.debug(f"{topic} -> {sub.link_id}: {'ON' if value else 'OFF'}"
                      f"{' (inverted)' if sub.invert else ''}")

            self.lines.set_line(sub.link_id, effective)

            for cmd in self.config.commands:
                if not cmd.valid or not link_matches(sub.link_id, cmd.link_id):
                    continue
                if effective:
                    self.supervisor.ensure_running(cmd)
                else:
                    self.supervisor.ensure_stopped(cmd)

        if not matched:
            log.debug(f"no subscription matches topic {topic}")
        return matched
