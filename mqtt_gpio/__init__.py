"""
mqtt_gpio

Bridge daemon: MQTT ON/OFF messages drive GPIO output lines and
start/stop external programs, from a static config file.
"""
__version__ = "0.1.0"

PACKAGE_NAME = "mqtt-gpio"
PACKAGE_STRING = f"{PACKAGE_NAME} {__version__}"
