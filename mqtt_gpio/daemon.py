import argparse
import logging
import signal
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from . import PACKAGE_STRING
from .config import DEFAULT_CONFIG_PATH, Config, ConfigError, load_config
from .connection import Connection
from .faults import FaultTracker
from .gpio import GPIOError, LineTable
from .log import log_dir_from_env, setup_logging
from .router import Router
from .supervisor import ProcessSupervisor

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_INIT = 2


# ============================================================
# Context
# ============================================================
@dataclass
class BridgeContext:
    config: Config
    lines: LineTable
    supervisor: ProcessSupervisor
    router: Router
    faults: FaultTracker = field(default_factory=FaultTracker)
    connection: Optional[Connection] = None

    @classmethod
    def build(cls, config: Config, gpio_provider=None, process_provider=None,
              faults: Optional[FaultTracker] = None) -> "BridgeContext":
        faults = faults or FaultTracker()
        lines = LineTable(config.gpios, provider=gpio_provider, faults=faults)
        supervisor = ProcessSupervisor(config.commands, provider=process_provider, faults=faults)
        router = Router(config, lines, supervisor)
        return cls(config=config, lines=lines, supervisor=supervisor, router=router, faults=faults)

    def shutdown(self) -> None:
        # reverse of creation: children, lines, transport
        self.supervisor.shutdown()
        self.lines.shutdown()
        if self.connection is not None:
            try:
                self.connection.stop()
            except OSError:
                pass


# ============================================================
# CLI
# ============================================================
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqtt-gpio",
        description="Drive GPIO lines and start/stop programs from MQTT ON/OFF messages",
    )
    p.add_argument("-v", "--version", action="version", version=PACKAGE_STRING,
                   help="show program version information and exit successfully")
    p.add_argument("-V", "--verbose", action="count", default=0,
                   help="run program verbosely, use multiple for more verbosity")
    p.add_argument("-c", "--config", metavar="<f>", default=DEFAULT_CONFIG_PATH,
                   help=f"use <f> for config instead of default ({DEFAULT_CONFIG_PATH})")
    return p


def parse_cmdline(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


# ============================================================
# MAIN
# ============================================================
def main(argv: Optional[List[str]] = None, gpio_provider=None, process_provider=None, client=None) -> int:
    args = parse_cmdline(argv)
    svc_log, _cfg_log = setup_logging(args.verbose, log_dir_from_env())

    svc_log.info(f"Starting {PACKAGE_STRING} cfg={args.config}")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        svc_log.error(str(e))
        return EXIT_CONFIG

    for line in config.describe():
        svc_log.debug(line)

    ctx = BridgeContext.build(config, gpio_provider=gpio_provider, process_provider=process_provider)

    try:
        ctx.lines.initialize()
    except GPIOError as e:
        svc_log.error(f"GPIO init failed: {e}")
        return EXIT_INIT
    except ImportError as e:
        svc_log.error(f"GPIO library unavailable: {e}")
        return EXIT_INIT

    try:
        ctx.connection = Connection(config, ctx.router, client=client, faults=ctx.faults)
    except (OSError, ValueError) as e:
        svc_log.error(f"can't initialize MQTT client: {e}")
        ctx.shutdown()
        return EXIT_INIT

    def handle_exit(signum, frame):
        svc_log.info(f"signal {signum} received, shutting down")
        ctx.connection.stop()

    prev_int = signal.signal(signal.SIGINT, handle_exit)
    prev_term = signal.signal(signal.SIGTERM, handle_exit)

    try:
        ctx.connection.connect()
        ctx.connection.run_forever()
    finally:
        svc_log.info("Shutting down...")
        for f in ctx.faults.active():
            svc_log.warning(f"active fault at shutdown: {f.key} x{f.count} ({f.message})")
        ctx.shutdown()
        signal.signal(signal.SIGINT, prev_int)
        signal.signal(signal.SIGTERM, prev_term)

    return EXIT_OK


def run() -> None:
    try:
        sys.exit(main())
    except Exception as e:
        logging.getLogger("mqtt_gpio").exception(f"Fatal exception: {e}")
        raise
