import glob
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .config import GPIOBinding, link_matches
from .faults import FaultTracker
from .log import SERVICE_LOGGER

log = logging.getLogger(SERVICE_LOGGER)

CHIP_GLOB = "/dev/gpiochip*"
_CHIP_NUM_RE = re.compile(r"^(?:/dev/)?(?:gpiochip)?(\d+)$")


class GPIOError(Exception):
    pass


@dataclass
class OutputLine:
    chip: Any
    offset: int


# ============================================================
# Provider (lgpio)
# ============================================================
class LgpioProvider:
    """
    GPIO character-device access through lgpio.

    Chips are named like libgpiod's lookup: "gpiochip0", "/dev/gpiochip0",
    "0", or a chip label such as "pinctrl-bcm2711".
    """

    def __init__(self):
        import lgpio

        self._lg = lgpio

    def _chip_number(self, name: str) -> int:
        m = _CHIP_NUM_RE.match(name.strip())
        if m:
            return int(m.group(1))
        for path in sorted(glob.glob(CHIP_GLOB)):
            m = _CHIP_NUM_RE.match(path)
            if not m:
                continue
            num = int(m.group(1))
            try:
                h = self._lg.gpiochip_open(num)
            except self._lg.error:
                continue
            try:
                _status, _lines, _name, label = self._lg.gpio_get_chip_info(h)
            finally:
                self._lg.gpiochip_close(h)
            if label == name:
                return num
        raise GPIOError(f"no gpio chip named '{name}'")

    def open_chip(self, name: str) -> Any:
        num = self._chip_number(name)
        try:
            return self._lg.gpiochip_open(num)
        except self._lg.error as e:
            raise GPIOError(f"can't open gpio device: {name} ({e})") from e

    def get_output_line(self, chip: Any, offset: int) -> OutputLine:
        try:
            self._lg.gpio_claim_output(chip, offset)
        except self._lg.error as e:
            raise GPIOError(f"can't get pin: {offset} ({e})") from e
        return OutputLine(chip=chip, offset=offset)

    def set_value(self, line: OutputLine, value: int) -> None:
        try:
            self._lg.gpio_write(line.chip, line.offset, value)
        except self._lg.error as e:
            raise GPIOError(str(e)) from e

    def release(self, line: OutputLine) -> None:
        try:
            self._lg.gpio_free(line.chip, line.offset)
        except self._lg.error as e:
            raise GPIOError(str(e)) from e

    def close_chip(self, chip: Any) -> None:
        try:
            self._lg.gpiochip_close(chip)
        except self._lg.error as e:
            raise GPIOError(str(e)) from e


# ============================================================
# Line table
# ============================================================
class LineTable:
    def __init__(self, bindings: Sequence[GPIOBinding], provider=None, faults: Optional[FaultTracker] = None):
        self.bindings = list(bindings)
        self._provider = provider
        self._faults = faults or FaultTracker()
        self._acquired: List[GPIOBinding] = []

    @property
    def provider(self):
        if self._provider is None:
            self._provider = LgpioProvider()
        return self._provider

    def initialize(self) -> None:
        log.debug(f"number of GPIO items: {len(self.bindings)}")
        if not self.bindings:
            return
        provider = self.provider
        try:
            for i, b in enumerate(self.bindings):
                log.debug(f"GPIO[{i}] chip: {b.chip_name} pin: {b.pin_offset}")
                b.chip = provider.open_chip(b.chip_name)
                self._acquired.append(b)
                b.line = provider.get_output_line(b.chip, b.pin_offset)
        except GPIOError:
            self.shutdown()
            raise

    def set_line(self, link_id: str, value: bool) -> int:
        written = 0
        for b in self.bindings:
            if b.line is None or not link_matches(link_id, b.link_id):
                continue
            key = f"GPIO_OUT:{b.link_id}:{b.chip_name}:{b.pin_offset}"
            log.debug(f"setting gpio chip {b.chip_name} pin {b.pin_offset} to {int(value)}")
            try:
                self.provider.set_value(b.line, int(value))
            except GPIOError as e:
                self._faults.raise_fault(key, f"GPIO write failed: {b.chip_name}:{b.pin_offset} {e}")
                continue
            self._faults.clear_fault(key)
            written += 1
        return written

    def shutdown(self) -> None:
        while self._acquired:
            b = self._acquired.pop()
            if b.line is not None:
                try:
                    self.provider.release(b.line)
                except GPIOError as e:
                    log.warning(f"GPIO release failed: {b.chip_name}:{b.pin_offset} {e}")
            try:
                self.provider.close_chip(b.chip)
            except GPIOError as e:
                log.warning(f"GPIO chip close failed: {b.chip_name} {e}")
            b.line = None
            b.chip = None
