import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

SERVICE_LOGGER = "mqtt_gpio"
CONFIG_LOGGER = "mqtt_gpio.config"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 2_000_000
LOG_BACKUPS = 5


def log_dir_from_env() -> Optional[str]:
    d = os.getenv("MQTT_GPIO_LOG_DIR", "").strip()
    return d or None


def make_logger(name: str, path: Optional[str] = None, level=logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    if not logger.handlers:
        if path:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            h = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS)
        else:
            h = logging.StreamHandler()
        h.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(h)
    return logger


def levels_for_verbosity(verbose: int):
    """
    Returns (service_level, config_level) for the number of -V flags.
    """
    if verbose <= 0:
        return logging.INFO, logging.WARNING
    if verbose == 1:
        return logging.DEBUG, logging.INFO
    return logging.DEBUG, logging.DEBUG


def setup_logging(verbose: int = 0, log_dir: Optional[str] = None):
    svc_level, cfg_level = levels_for_verbosity(verbose)
    svc_path = os.path.join(log_dir, "service_log.log") if log_dir else None
    cfg_path = os.path.join(log_dir, "config_log.log") if log_dir else None
    svc = make_logger(SERVICE_LOGGER, svc_path, svc_level)
    cfg = make_logger(CONFIG_LOGGER, cfg_path, cfg_level)
    # handlers are only attached once, levels follow the latest call
    svc.setLevel(svc_level)
    cfg.setLevel(cfg_level)
    return svc, cfg
