"""Command line, startup ordering, exit codes and shutdown."""

import signal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import paho.mqtt.client as mqtt
import pytest

from conftest import FakeGPIOProvider
from mqtt_gpio import PACKAGE_STRING
from mqtt_gpio.daemon import EXIT_CONFIG, EXIT_INIT, EXIT_OK, main, parse_cmdline

CONF = (
    "MQTT localhost 1883\n"
    "GPIO L1 chip0 4\n"
    "SUB topic/x L1 0\n"
)


@pytest.fixture
def client():
    c = MagicMock()
    c.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return c


# =============================================================================
# CLI
# =============================================================================

def test_help_exits_zero(capsys):
    with pytest.raises(SystemExit) as exc:
        parse_cmdline(["--help"])
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "--config" in out and "--verbose" in out


@pytest.mark.parametrize("flag", ["-v", "--version"])
def test_version_exits_zero(capsys, flag):
    with pytest.raises(SystemExit) as exc:
        parse_cmdline([flag])
    assert exc.value.code == 0
    assert capsys.readouterr().out.strip() == PACKAGE_STRING


def test_verbose_is_repeatable():
    assert parse_cmdline([]).verbose == 0
    assert parse_cmdline(["-V", "-V"]).verbose == 2
    assert parse_cmdline(["-VVV"]).verbose == 3
    assert parse_cmdline(["--verbose"]).verbose == 1


def test_config_override():
    assert parse_cmdline(["-c", "/tmp/x.conf"]).config == "/tmp/x.conf"
    assert parse_cmdline(["--config", "/tmp/y.conf"]).config == "/tmp/y.conf"
    assert parse_cmdline([]).config == "/etc/mqtt-gpio/mqtt-gpio.conf"


@pytest.mark.parametrize("argv", [["extra"], ["-c", "a.conf", "extra"], ["--bogus"]])
def test_usage_errors_exit_nonzero(argv):
    with pytest.raises(SystemExit) as exc:
        parse_cmdline(argv)
    assert exc.value.code != 0


# =============================================================================
# STARTUP FAILURES
# =============================================================================

def test_missing_config_exits_nonzero(tmp_path, client, capsys):
    rc = main(["-c", str(tmp_path / "missing.conf")], client=client)
    assert rc == EXIT_CONFIG
    assert "can't read config file" in capsys.readouterr().err
    client.connect.assert_not_called()


def test_bad_config_line_exits_nonzero(write_config, client, capsys):
    path = write_config("MQTT localhost 1883\nBOGUS x\n")
    assert main(["-c", path], client=client) == EXIT_CONFIG
    assert "invalid config line #2" in capsys.readouterr().err


def test_gpio_failure_exits_before_connecting(write_config, client):
    provider = FakeGPIOProvider(bad_chips={"chip0"})
    rc = main(["-c", write_config(CONF)], gpio_provider=provider, client=client)
    assert rc == EXIT_INIT
    client.connect.assert_not_called()


def test_missing_gpio_library_exits_before_connecting(write_config, client, capsys):
    with patch("mqtt_gpio.gpio.LgpioProvider", side_effect=ImportError("No module named 'lgpio'")):
        rc = main(["-c", write_config(CONF)], client=client)
    assert rc == EXIT_INIT
    assert "GPIO library unavailable: No module named 'lgpio'" in capsys.readouterr().err
    client.connect.assert_not_called()


# =============================================================================
# RUN / SHUTDOWN
# =============================================================================

def test_run_dispatches_and_shuts_down(write_config, gpio_provider, process_provider, client):
    def loop_forever(**kwargs):
        client.on_connect(client, None, {}, 0, None)
        client.on_message(client, None, SimpleNamespace(topic="topic/x", payload=b"ON"))
        client.on_message(client, None, SimpleNamespace(topic="topic/x", payload=b"OFF"))

    client.loop_forever.side_effect = loop_forever
    rc = main(["-c", write_config(CONF)], gpio_provider=gpio_provider,
              process_provider=process_provider, client=client)

    assert rc == EXIT_OK
    client.connect.assert_called_once_with("localhost", 1883, keepalive=10)
    client.subscribe.assert_called_once_with("topic/x", 0)
    assert gpio_provider.writes == [("chip0", 4, 1), ("chip0", 4, 0)]
    assert gpio_provider.released == [("chip0", 4)]
    assert gpio_provider.closed == ["chip0"]


def test_sigterm_stops_loop_and_children(write_config, gpio_provider, process_provider, client, make_executable):
    exe = make_executable()
    path = write_config(CONF + f"CMD P1 {exe}\nSUB run P1 0\n")

    def loop_forever(**kwargs):
        client.on_message(client, None, SimpleNamespace(topic="run", payload=b"ON"))
        signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)

    client.loop_forever.side_effect = loop_forever
    before = signal.getsignal(signal.SIGTERM)
    rc = main(["-c", path], gpio_provider=gpio_provider, process_provider=process_provider, client=client)

    assert rc == EXIT_OK
    assert client.disconnect.called
    assert len(process_provider.spawned) == 1
    assert process_provider.terminated == process_provider.spawned
    assert signal.getsignal(signal.SIGTERM) == before


def test_active_faults_are_reported_at_shutdown(write_config, process_provider, client, capsys):
    provider = FakeGPIOProvider(failing_writes={("chip0", 4)})

    def loop_forever(**kwargs):
        client.on_message(client, None, SimpleNamespace(topic="topic/x", payload=b"ON"))

    client.loop_forever.side_effect = loop_forever
    rc = main(["-c", write_config(CONF)], gpio_provider=provider,
              process_provider=process_provider, client=client)

    assert rc == EXIT_OK
    err = capsys.readouterr().err
    assert "active fault at shutdown: GPIO_OUT:L1:chip0:4 x1" in err
    assert provider.released == [("chip0", 4)]
