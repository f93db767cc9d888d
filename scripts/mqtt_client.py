#!/usr/bin/env python3
# Battery Keeper - MQTT Status Bridge
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Polls `battery status_csv`, publishes the battery state to an MQTT broker
# for HomeAssistant integration, and accepts a new maintain target from
# HomeAssistant which is passed on to `battery maintain`.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
MQTT status bridge for battery-keeper
Publishes battery status for HomeAssistant integration

This client runs `battery status_csv` every interval, publishes the parsed
fields to an MQTT broker with HomeAssistant discovery, and exposes the
maintain target as a text entity. A target set from HomeAssistant is
validated with `parse_target` before `battery maintain` is run with it.

Broker settings come from the command line or the BATTERY_MQTT_* environment
variables.

Usage:
    scripts/mqtt_client.py --broker 192.168.1.10 --port 1883 --interval 60
"""

import argparse
import json
import logging
import os
import signal
import sys
import time

import paho.mqtt.client as mqtt

from battery_keeper import config
from battery_keeper.commands import run_command
from battery_keeper.errors import ValidationError
from battery_keeper.targets import parse_target

log = logging.getLogger(__name__)

# Topic configuration
AVAILABILITY_TOPIC = "battery/macbook/availability"
STATE_TOPIC = "battery/macbook/state"

# Maintain target (HomeAssistant sends commands TO the bridge)
MAINTAIN_COMMAND_TOPIC = "battery/macbook/maintain/set"
MAINTAIN_STATE_TOPIC = "battery/macbook/maintain/state"

# Device configuration for HomeAssistant
DEVICE_CONFIG = {
    "identifiers": ["battery_keeper"],
    "name": "MacBook Battery",
    "manufacturer": "Apple",
    "model": "MacBook",
    "sw_version": config.VERSION,
}


def _sensor(field, name, **extra):
    sensor = {
        "name": name,
        "state_topic": STATE_TOPIC,
        "value_template": "{{ value_json.%s }}" % field,
        "availability_topic": AVAILABILITY_TOPIC,
        "unique_id": f"battery_keeper_{field}",
        "device": DEVICE_CONFIG,
    }
    sensor.update(extra)
    return sensor


# Sensor configurations for HomeAssistant discovery
SENSOR_CONFIGS = {
    "percentage": _sensor("percentage", "Battery Level", unit_of_measurement="%",
                          device_class="battery", state_class="measurement"),
    "remaining": _sensor("remaining", "Battery Time Remaining"),
    "charging": _sensor("charging", "Battery Charging"),
    "discharging": _sensor("discharging", "Battery Force Discharge"),
}

# Text entity: "80", "70-80", "11.4V 0.3V" or "stop"
TEXT_CONFIGS = {
    "maintain": {
        "name": "Battery Maintain Target",
        "command_topic": MAINTAIN_COMMAND_TOPIC,
        "state_topic": MAINTAIN_STATE_TOPIC,
        "availability_topic": AVAILABILITY_TOPIC,
        "unique_id": "battery_keeper_maintain",
        "device": DEVICE_CONFIG,
    }
}


def parse_status_csv(line):
    """Turn `percentage,remaining,charging,discharging,target` into a dict."""
    fields = (line or "").strip().split(",")
    fields += [""] * (5 - len(fields))
    percentage, remaining, charging, discharging, target = fields[:5]
    return {
        "percentage": int(percentage) if percentage.isdigit() else None,
        "remaining": remaining or "unknown",
        "charging": charging or "unknown",
        "discharging": discharging or "unknown",
        "maintain": target,
    }


def maintain_arguments(payload):
    """Validate a maintain payload; returns the argv tail for `battery maintain`.

    Raises ValidationError for anything `battery maintain` would reject.
    """
    parts = payload.strip().split()
    if len(parts) == 1 and parts[0].lower() == "stop":
        return ["stop"]
    if not parts or len(parts) > 2:
        raise ValidationError(f"'{payload}' is not a maintain target")
    parse_target(parts[0], parts[1] if len(parts) == 2 else None)
    return parts


class BatteryMQTTClient:
    def __init__(self, broker="localhost", port=1883, username=None, password=None,
                 runner=run_command, battery=str(config.BATTERY_BINARY)):
        self.broker = broker
        self.mqtt_port = port
        self.username = username
        self.password = password
        self.runner = runner
        self.battery = battery
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id="battery_keeper_client")
        self.running = True

        # Ignore retained commands until the current state is published
        self.initialization_complete = False

        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message

    def on_connect(self, client, userdata, connect_flags, reason_code, properties):
        """Callback for when the client connects to the broker"""
        if reason_code == 0:
            log.info(f"Connected to MQTT broker at {self.broker}:{self.mqtt_port}")
            self.client.publish(AVAILABILITY_TOPIC, "online", qos=1, retain=True)
            log.debug(f"Published: {AVAILABILITY_TOPIC} = online")
        else:
            log.error(f"Failed to connect to MQTT broker, return code {reason_code}")

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        """Callback for when the client disconnects from the broker"""
        log.info(f"Disconnected from MQTT broker (code: {reason_code})")

    def on_message(self, client, userdata, msg):
        """Callback for when a maintain target arrives from HomeAssistant"""
        if not self.initialization_complete:
            return
        if msg.topic != MAINTAIN_COMMAND_TOPIC:
            return

        payload = msg.payload.decode("utf-8", errors="replace").strip()
        try:
            args = maintain_arguments(payload)
        except ValidationError as e:
            log.warning(f"Invalid payload on {msg.topic}: '{payload}' (ignored): {e}")
            return

        res = self.runner([self.battery, "maintain", *args])
        status = "OK" if res.returncode == 0 else "FAILED"
        log.info(f"Maintain Command: {' '.join(args)} ({status})")
        if res.returncode != 0:
            log.debug(f"battery maintain output: {res.stdout}{res.stderr}")

    def publish_config(self):
        """Publish sensor configurations for HomeAssistant autodiscovery"""
        log.debug("Publishing sensor configurations...")
        for sensor_id, sensor in SENSOR_CONFIGS.items():
            topic = f"homeassistant/sensor/battery_keeper/{sensor_id}/config"
            self.client.publish(topic, json.dumps(sensor), qos=1, retain=True)
            log.debug(f"Published config for {sensor_id}")

        for text_id, text in TEXT_CONFIGS.items():
            topic = f"homeassistant/text/battery_keeper/{text_id}/config"
            self.client.publish(topic, json.dumps(text), qos=1, retain=True)
            log.debug(f"Published config for {text_id}")

    def get_battery_status(self):
        """Run `battery status_csv`; returns None when the command fails"""
        res = self.runner([self.battery, "status_csv"])
        if res.returncode != 0:
            log.warning(f"battery status_csv failed: {res.stderr.strip()}")
            return None
        lines = [ln for ln in res.stdout.splitlines() if ln.strip()]
        return parse_status_csv(lines[-1] if lines else "")

    def publish_state(self, state_data):
        """Publish current battery state"""
        self.client.publish(STATE_TOPIC, json.dumps(state_data), qos=1, retain=True)
        self.client.publish(MAINTAIN_STATE_TOPIC, state_data.get("maintain") or "stop", qos=1, retain=True)
        log.debug(f"Published state: {json.dumps(state_data, indent=2)}")

    def connect(self):
        """Connect to the MQTT broker"""
        if self.username and self.password:
            self.client.username_pw_set(self.username, self.password)

        try:
            log.debug(f"Connecting to MQTT broker at {self.broker}:{self.mqtt_port}...")
            self.client.connect(self.broker, self.mqtt_port, keepalive=60)
            self.client.loop_start()
            time.sleep(1)
            return True
        except OSError as e:
            log.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self):
        """Disconnect from the MQTT broker"""
        log.info("Shutting down...")
        self.client.publish(AVAILABILITY_TOPIC, "offline", qos=1, retain=True)
        time.sleep(0.5)
        self.client.loop_stop()
        self.client.disconnect()
        self.running = False

    def run(self, interval=60):
        """Main loop - poll `battery status_csv` and publish to MQTT"""
        if not self.connect():
            return

        self.publish_config()
        state_data = self.get_battery_status()
        if state_data is not None:
            self.publish_state(state_data)

        # Subscribe only after the real target is published
        self.client.subscribe(MAINTAIN_COMMAND_TOPIC, qos=1)
        self.initialization_complete = True
        log.info("Initialization complete - subscribed to maintain command topic")
        log.info(f"Publishing battery status every {interval} second(s)...")

        try:
            while self.running:
                time.sleep(interval)
                state_data = self.get_battery_status()
                if state_data is not None:
                    self.publish_state(state_data)
        except KeyboardInterrupt:
            log.info("Interrupted by user")
            self.disconnect()

    def signal_handler(self, sig, frame):
        """Handle termination signals gracefully (SIGINT from Ctrl+C, SIGTERM from kill)"""
        self.disconnect()
        sys.exit(0)


def main():
    """Main entry point"""
    env = os.environ
    parser = argparse.ArgumentParser(description="MQTT status bridge for battery-keeper")
    parser.add_argument("--broker", default=env.get("BATTERY_MQTT_BROKER", "localhost"),
                        help="MQTT broker hostname or IP (default: localhost)")
    parser.add_argument("--port", default=int(env.get("BATTERY_MQTT_PORT", "1883")), type=int,
                        help="MQTT broker port (default: 1883)")
    parser.add_argument("--username", default=env.get("BATTERY_MQTT_USERNAME"), help="MQTT username")
    parser.add_argument("--password", default=env.get("BATTERY_MQTT_PASSWORD"), help="MQTT password")
    parser.add_argument("--interval", default=60, type=int, help="Publish interval in seconds (default: 60)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.WARNING
    log_format = '[%(asctime)s] %(levelname)s: %(message)s'
    logging.basicConfig(level=log_level, format=log_format, datefmt='%H:%M:%S')

    mqtt_client = BatteryMQTTClient(
        broker=args.broker,
        port=args.port,
        username=args.username,
        password=args.password,
    )

    signal.signal(signal.SIGINT, mqtt_client.signal_handler)
    signal.signal(signal.SIGTERM, mqtt_client.signal_handler)

    mqtt_client.run(interval=args.interval)


if __name__ == "__main__":
    main()
