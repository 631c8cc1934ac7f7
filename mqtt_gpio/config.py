import logging
import os
import stat
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from .log import CONFIG_LOGGER

CONFIG_LOG = logging.getLogger(CONFIG_LOGGER)

# ============================================================
# Defaults
# ============================================================
ETCPKGDIR = "/etc/mqtt-gpio"
DEFAULT_CONFIG_FILE = "mqtt-gpio.conf"
DEFAULT_CONFIG_PATH = os.path.join(ETCPKGDIR, DEFAULT_CONFIG_FILE)

ONESHOT_KEYWORD = "oneshot"
INVERT_KEYWORD = "INV"
VALID_QOS = (0, 1, 2)


class ConfigError(Exception):
    def __init__(self, message: str, lineno: Optional[int] = None, source: str = ""):
        self.lineno = lineno
        self.source = source
        if lineno is not None:
            message = f"invalid config line #{lineno}: {message}"
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


# ============================================================
# Tables
# ============================================================
@dataclass
class GPIOBinding:
    link_id: str
    chip_name: str
    pin_offset: int
    chip: Any = field(default=None, repr=False, compare=False)
    line: Any = field(default=None, repr=False, compare=False)


@dataclass
class ProcessBinding:
    link_id: str
    command_path: str
    oneshot: bool = False
    valid: bool = False
    running: bool = False
    handle: Any = field(default=None, repr=False, compare=False)

    def check_valid(self) -> bool:
        """
        Computed once at load: path exists, is a regular file, is executable.
        """
        try:
            st = os.stat(self.command_path)
        except OSError:
            self.valid = False
            return False
        self.valid = stat.S_ISREG(st.st_mode) and os.access(self.command_path, os.X_OK)
        return self.valid


@dataclass(frozen=True)
class TopicAssociation:
    topic_pattern: str
    link_id: str
    qos: int = 0
    invert: bool = False


@dataclass
class Config:
    mqtt_host: Optional[str] = None
    mqtt_port: int = 0
    gpios: List[GPIOBinding] = field(default_factory=list)
    commands: List[ProcessBinding] = field(default_factory=list)
    subscriptions: List[TopicAssociation] = field(default_factory=list)
    source: str = ""

    def topic_patterns(self) -> List[Tuple[str, int]]:
        """
        Distinct topic patterns in first-seen order, each with the highest qos
        any association asked for.
        """
        out: dict = {}
        for sub in self.subscriptions:
            out[sub.topic_pattern] = max(out.get(sub.topic_pattern, sub.qos), sub.qos)
        return list(out.items())

    def describe(self) -> List[str]:
        lines = [f"MQTT broker: {self.mqtt_host}:{self.mqtt_port}"]
        lines.append(f"number of GPIO items: {len(self.gpios)}")
        for i, g in enumerate(self.gpios):
            lines.append(f"GPIO[{i}] link={g.link_id} chip={g.chip_name} pin={g.pin_offset}")
        lines.append(f"number of CMD items: {len(self.commands)}")
        for i, c in enumerate(self.commands):
            flags = []
            if c.oneshot:
                flags.append("oneshot")
            if not c.valid:
                flags.append("INVALID")
            lines.append(f"CMD[{i}] link={c.link_id} path={c.command_path} {' '.join(flags)}".rstrip())
        lines.append(f"number of SUB items: {len(self.subscriptions)}")
        for i, s in enumerate(self.subscriptions):
            inv = " INV" if s.invert else ""
            lines.append(f"SUB[{i}] topic={s.topic_pattern} link={s.link_id} qos={s.qos}{inv}")
        return lines


# ============================================================
# Parsing
# ============================================================
def _required(tokens: List[str], idx: int, what: str, lineno: int, source: str) -> str:
    if idx >= len(tokens):
        raise ConfigError(f"{what} expected", lineno, source)
    return tokens[idx]


def _required_int(tokens: List[str], idx: int, what: str, lineno: int, source: str) -> int:
    raw = _required(tokens, idx, what, lineno, source)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{what} must be an integer, got '{raw}'", lineno, source) from None


def _optional_flag(tokens: List[str], idx: int, keyword: str) -> bool:
    return len(tokens) > idx and tokens[idx] == keyword


def parse_config(lines: Iterable[str], source: str = "") -> Config:
    cfg = Config(source=source)

    for lineno, raw in enumerate(lines, start=1):
        CONFIG_LOG.debug(f"config[{lineno:03d}]: {raw.rstrip()}")

        stripped = raw.strip()
        if not stripped:
            CONFIG_LOG.debug(" skipping empty line")
            continue
        if stripped.startswith("#"):
            CONFIG_LOG.debug(" skipping comment")
            continue

        tokens = stripped.split()
        keyword = tokens[0]

        if keyword == "MQTT":
            cfg.mqtt_host = _required(tokens, 1, "MQTT server DNS/IP", lineno, source)
            cfg.mqtt_port = _required_int(tokens, 2, "MQTT server port", lineno, source)
            if not 1 <= cfg.mqtt_port <= 65535:
                raise ConfigError(f"MQTT server port must be 1-65535, got {cfg.mqtt_port}", lineno, source)
            CONFIG_LOG.info(f"MQTT server: {cfg.mqtt_host} port: {cfg.mqtt_port}")
            continue

        if keyword == "GPIO":
            binding = GPIOBinding(
                link_id=_required(tokens, 1, "gpio name", lineno, source),
                chip_name=_required(tokens, 2, "chip", lineno, source),
                pin_offset=_required_int(tokens, 3, "pin", lineno, source),
            )
            if binding.pin_offset < 0:
                raise ConfigError(f"pin must not be negative, got {binding.pin_offset}", lineno, source)
            cfg.gpios.append(binding)
            CONFIG_LOG.info(f"found GPIO #{len(cfg.gpios)}: {binding.link_id} -> {binding.chip_name}:{binding.pin_offset}")
            continue

        if keyword == "CMD":
            binding = ProcessBinding(
                link_id=_required(tokens, 1, "cmd name", lineno, source),
                command_path=_required(tokens, 2, "executable path", lineno, source),
                oneshot=_optional_flag(tokens, 3, ONESHOT_KEYWORD),
            )
            if not binding.check_valid():
                CONFIG_LOG.warning(
                    f"config line #{lineno}: '{binding.command_path}' is not an executable file; "
                    f"CMD {binding.link_id} disabled"
                )
            cfg.commands.append(binding)
            CONFIG_LOG.info(f"found CMD #{len(cfg.commands)}: {binding.link_id} -> {binding.command_path}"
                            f"{' (oneshot)' if binding.oneshot else ''}")
            continue

        if keyword == "SUB":
            topic = _required(tokens, 1, "topic", lineno, source)
            link_id = _required(tokens, 2, "gpio name", lineno, source)
            qos = _required_int(tokens, 3, "qos", lineno, source)
            if qos not in VALID_QOS:
                raise ConfigError(f"qos must be 0, 1 or 2, got {qos}", lineno, source)
            sub = TopicAssociation(
                topic_pattern=topic,
                link_id=link_id,
                qos=qos,
                invert=_optional_flag(tokens, 4, INVERT_KEYWORD),
            )
            cfg.subscriptions.append(sub)
            CONFIG_LOG.info(f"found SUB #{len(cfg.subscriptions)}: {sub.topic_pattern} -> {sub.link_id} "
                            f"qos={sub.qos}{' INV' if sub.invert else ''}")
            continue

        raise ConfigError(f"unknown CMD: {keyword}", lineno, source)

    if cfg.mqtt_host is None:
        raise ConfigError("no MQTT broker line found", source=source)

    return cfg


def load_config(path: str) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return parse_config(f, source=path)
    except OSError as e:
        raise ConfigError(f"can't read config file: {e.strerror or e}", source=path) from e
    except UnicodeDecodeError as e:
        raise ConfigError(f"config file is not valid UTF-8: {e}", source=path) from e


def link_matches(a: str, b: str) -> bool:
    """
    Link ids join by prefix: compare only up to the shorter id's length,
    so "li" matches "light".
    """
    n = min(len(a), len(b))
    return a[:n] == b[:n]
