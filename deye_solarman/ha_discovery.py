"""Home Assistant MQTT discovery payloads for one inverter."""

from typing import Dict, Iterable, List, Optional, Tuple

from . import __version__
from .register_parser import RegisterDefinition, slugify

# Diagnostic entities fed by MQTTPublisher.publish_device_runtime
# (field, name, device_class, state_class, icon)
RUNTIME_SENSORS = (
    ("transport", "Transport Mode", None, None, "mdi:swap-horizontal"),
    ("last_seen", "Last Seen", "timestamp", None, "mdi:clock-outline"),
    ("consecutive_failures", "Consecutive Failures", None, "measurement", "mdi:alert-circle"),
    ("last_error", "Last Error", None, None, "mdi:alert-outline"),
    ("backoff", "Night Backoff", None, None, "mdi:weather-night"),
)

DiscoveryMessage = Tuple[str, Dict]


def device_block(device_name: str, model: Optional[str] = None,
                 serial_number: Optional[str] = None) -> Dict:
    block = {
        "identifiers": [f"deye_{slugify(device_name)}"],
        "name": device_name,
        "manufacturer": "Deye",
        "sw_version": f"deye-solarman-mqtt {__version__}",
    }
    if model:
        block["model"] = model
    if serial_number:
        block["serial_number"] = serial_number
    return block


def sensor_entity(name: str, state_topic: str, unique_id: str, availability: List[Dict],
                  device: Dict, **extra) -> Dict:
    """Sensor config; ``extra`` keys with empty values are left out."""
    entity = {
        "name": name,
        "state_topic": state_topic,
        "unique_id": unique_id,
        "availability": availability,
        "device": device,
    }
    entity.update((key, value) for key, value in extra.items() if value)
    return entity


def discovery_messages(discovery_prefix: str, topic_prefix: str, device_name: str,
                       definitions: Iterable[RegisterDefinition],
                       model: Optional[str] = None,
                       serial_number: Optional[str] = None) -> List[DiscoveryMessage]:
    """(config topic, payload) for every catalog value and runtime diagnostic.

    Catalog sensors need both the application and the inverter online;
    diagnostics only follow the application so they stay readable while
    the inverter is unreachable.
    """
    slug = slugify(device_name)
    state_base = f"{topic_prefix}/{slug}"
    config_base = f"{discovery_prefix}/sensor/deye/{slug}"
    device = device_block(device_name, model, serial_number)
    app_online = {"topic": f"{topic_prefix}/status"}

    messages = []
    for definition in definitions:
        field = definition.field_name
        entity = sensor_entity(
            definition.name, f"{state_base}/{field}", f"deye_{slug}_{field}",
            [app_online, {"topic": f"{state_base}/availability"}], device,
            availability_mode="all",
            unit_of_measurement=definition.uom,
            device_class=definition.device_class,
            state_class=definition.state_class,
        )
        messages.append((f"{config_base}/{field}/config", entity))

    for field, name, device_class, state_class, icon in RUNTIME_SENSORS:
        entity = sensor_entity(
            name, f"{state_base}/runtime/{field}", f"deye_{slug}_runtime_{field}",
            [app_online], device,
            device_class=device_class,
            state_class=state_class,
            icon=icon,
            entity_category="diagnostic",
        )
        messages.append((f"{config_base}/runtime_{field}/config", entity))

    return messages
