#!/usr/bin/env python3
"""Container healthcheck for Deye Solarman MQTT.

The service rewrites HEALTH_FILE every 30 s:

    <unix time>
    healthy | sleep | unhealthy
    mqtt:<True|False>
    devices:<available>/<configured>
    sleep_mode:<True|False>
    uptime:<Xd Xh Xm>

Exit 0 when the file is fresh, the status is healthy or sleep (every
inverter in night backoff) and MQTT is not reported down; 1 otherwise.
"""

import os
import sys
import time

HEALTH_FILE = '/tmp/deye_solarman_health'
MAX_AGE_SECONDS = 120
PASSING = ('healthy', 'sleep')


def format_uptime(seconds: float) -> str:
    """90061 -> '1d 1h 1m'; days and hours are left out while zero."""
    minutes_total = int(seconds) // 60
    days, rest = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def write_health_file(path: str, status: str, **fields):
    lines = [str(int(time.time())), status] + [f"{key}:{value}" for key, value in fields.items()]
    with open(path, 'w') as f:
        f.write("\n".join(lines) + "\n")


def parse_health_file(lines):
    """(timestamp, status, {key: value}) from the file's lines."""
    timestamp = int(lines[0].strip())
    status = lines[1].strip()
    fields = dict(
        line.strip().split(':', 1) for line in lines[2:] if ':' in line
    )
    return timestamp, status, fields


def check_health(health_file: str = HEALTH_FILE) -> int:
    if not os.path.exists(health_file):
        print("No health file yet, service may still be starting")
        return 1

    try:
        with open(health_file, 'r') as f:
            lines = f.readlines()
        if len(lines) < 2:
            print("Health file is truncated")
            return 1
        timestamp, status, fields = parse_health_file(lines)
    except (OSError, ValueError) as e:
        print(f"Unreadable health file: {e}")
        return 1

    age = int(time.time() - timestamp)
    devices = fields.get('devices', '?')

    if age > MAX_AGE_SECONDS:
        print(f"Health file not updated for {age}s (limit {MAX_AGE_SECONDS}s)")
        return 1
    if status not in PASSING:
        print(f"Status {status}, inverters available: {devices}")
        return 1
    if fields.get('mqtt') == 'False':
        print("MQTT broker unreachable")
        return 1

    if status == 'sleep':
        print(f"Night backoff on every inverter, updated {age}s ago")
    else:
        print(f"OK, inverters available: {devices}, updated {age}s ago")
    return 0


if __name__ == '__main__':
    sys.exit(check_health())
