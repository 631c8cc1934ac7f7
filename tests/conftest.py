import logging
import os

import pytest

from mqtt_gpio.config import parse_config
from mqtt_gpio.gpio import GPIOError, OutputLine
from mqtt_gpio.log import CONFIG_LOGGER, SERVICE_LOGGER
from mqtt_gpio.supervisor import SpawnError


# =============================================================================
# FAKE PROVIDERS
# =============================================================================

class FakeChip:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self):
        return f"FakeChip({self.name})"


class FakeGPIOProvider:
    """Records every call; failures are opt-in per chip/pin."""

    def __init__(self, bad_chips=(), bad_pins=(), failing_writes=()):
        self.bad_chips = set(bad_chips)
        self.bad_pins = set(bad_pins)
        self.failing_writes = set(failing_writes)
        self.opened = []
        self.claimed = []
        self.writes = []
        self.released = []
        self.closed = []

    def open_chip(self, name):
        if name in self.bad_chips:
            raise GPIOError(f"can't open gpio device: {name}")
        chip = FakeChip(name)
        self.opened.append(name)
        return chip

    def get_output_line(self, chip, offset):
        if (chip.name, offset) in self.bad_pins:
            raise GPIOError(f"can't get pin: {offset}")
        self.claimed.append((chip.name, offset))
        return OutputLine(chip=chip, offset=offset)

    def set_value(self, line, value):
        if (line.chip.name, line.offset) in self.failing_writes:
            raise GPIOError("write failed")
        self.writes.append((line.chip.name, line.offset, value))

    def release(self, line):
        self.released.append((line.chip.name, line.offset))

    def close_chip(self, chip):
        self.closed.append(chip.name)


class FakeChild:
    _next_pid = 1000

    def __init__(self, path):
        FakeChild._next_pid += 1
        self.pid = FakeChild._next_pid
        self.path = path
        self.returncode = None


class FakeProcessProvider:
    def __init__(self, failing_paths=()):
        self.failing_paths = set(failing_paths)
        self.spawned = []
        self.terminated = []
        self.waited = []

    def spawn(self, path):
        if path in self.failing_paths:
            raise SpawnError(f"{path}: No such file or directory")
        child = FakeChild(path)
        self.spawned.append(child)
        return child

    def terminate(self, handle):
        self.terminated.append(handle)
        handle.returncode = -15

    def wait(self, handle):
        self.waited.append(handle)
        if handle.returncode is None:
            handle.returncode = 0
        return handle.returncode

    def poll(self, handle):
        return handle.returncode

    def pid(self, handle):
        return handle.pid


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_loggers():
    """main() detaches our loggers from the root; undo that for caplog."""
    yield
    for name in (SERVICE_LOGGER, CONFIG_LOGGER):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(logging.NOTSET)


@pytest.fixture
def gpio_provider():
    return FakeGPIOProvider()


@pytest.fixture
def process_provider():
    return FakeProcessProvider()


@pytest.fixture
def make_executable(tmp_path):
    def _make(name="run.sh", mode=0o755):
        p = tmp_path / name
        p.write_text("#!/bin/sh\nexit 0\n")
        os.chmod(p, mode)
        return str(p)
    return _make


@pytest.fixture
def write_config(tmp_path):
    def _write(text, name="mqtt-gpio.conf"):
        p = tmp_path / name
        p.write_text(text)
        return str(p)
    return _write


@pytest.fixture
def build_config():
    def _build(text):
        return parse_config(text.splitlines(keepends=True), source="test.conf")
    return _build

