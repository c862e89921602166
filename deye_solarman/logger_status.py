"""Solarman logger web UI (status.html) reader.

The logger's own access point is named ``AP_<logger serial>``, which lets the
identify flow find the serial without the user reading it off the sticker.
"""

import re
from typing import Dict, Optional

import requests

from .logging_setup import get_logger

DEFAULT_USER = "admin"
DEFAULT_PASSWORD = "admin"
STATUS_TIMEOUT = 8.0
SERIAL_LOOKUP_TIMEOUT = 6.0

_AP_SSID_SERIAL = re.compile(r'^AP_(\d+)$')
_PERCENT = re.compile(r'(\d{1,3})\s*%')


def get_js_var(html: str, name: str) -> Optional[str]:
    """Value of ``var <name> = "...";`` in the page, or None."""
    match = re.search(rf'var\s+{re.escape(name)}\s*=\s*"([^"]*)";', html, re.IGNORECASE)
    return match.group(1) if match else None


def parse_percent(text: Optional[str]) -> Optional[int]:
    """'78%' -> 78, clamped to 0..100."""
    if not text:
        return None
    match = _PERCENT.search(text)
    if not match:
        return None
    return max(0, min(100, int(match.group(1))))


def parse_status_page(html: str) -> Dict:
    """Extract Wi-Fi mode, access point and station details."""
    return {
        'mode': get_js_var(html, 'cover_wmode'),
        'ap': {
            'ssid': get_js_var(html, 'cover_ap_ssid'),
            'ip': get_js_var(html, 'cover_ap_ip'),
            'mac': get_js_var(html, 'cover_ap_mac'),
        },
        'sta': {
            'ssid': get_js_var(html, 'cover_sta_ssid'),
            'ip': get_js_var(html, 'cover_sta_ip'),
            'mac': get_js_var(html, 'cover_sta_mac'),
            'signal_quality': parse_percent(get_js_var(html, 'cover_sta_rssi')),
        },
    }


def get_logger_wifi_status(host: str, user: str = DEFAULT_USER,
                           password: str = DEFAULT_PASSWORD,
                           timeout: float = STATUS_TIMEOUT) -> Dict:
    """
    Read the logger's Wi-Fi status page.

    Args:
        host: Logger IP or hostname
        user: Web UI user
        password: Web UI password
        timeout: HTTP timeout in seconds

    Returns:
        Dict with 'mode', 'ap' and 'sta' sections

    Raises:
        requests.RequestException: network failure or non-2xx response
    """
    resp = requests.get(f"http://{host}/status.html", auth=(user, password), timeout=timeout)
    resp.raise_for_status()
    return parse_status_page(resp.text)


def serial_from_ap_ssid(ssid: Optional[str]) -> Optional[int]:
    if not ssid:
        return None
    match = _AP_SSID_SERIAL.match(ssid)
    return int(match.group(1)) if match else None


def fetch_logger_serial(host: str, user: str = DEFAULT_USER,
                        password: str = DEFAULT_PASSWORD) -> Optional[int]:
    """Logger serial from the AP SSID, or None on any failure."""
    try:
        status = get_logger_wifi_status(host, user, password, timeout=SERIAL_LOOKUP_TIMEOUT)
    except requests.RequestException as e:
        get_logger().warning(f"Could not read status page from {host}: {e}")
        return None
    return serial_from_ap_ssid(status['ap']['ssid'])
