"""Per-device topic addressing.

``devices/<id>/in`` carries broker → device commands, ``devices/<id>/out``
carries device → broker notifications. Pure functions, no state.
"""

from __future__ import annotations

import re

from .core_types import TopicBinding
from .errors import MalformedTopic

TOPIC_ROOT = "devices"
INBOUND_SUFFIX = "in"
OUTBOUND_SUFFIX = "out"

# Subscription pattern covering every device's inbound topic.
INBOUND_SUBSCRIPTION = f"{TOPIC_ROOT}/+/{INBOUND_SUFFIX}"

_INBOUND_RE = re.compile(rf"{TOPIC_ROOT}/([^/+#]+)/{INBOUND_SUFFIX}")
_ID_RE = re.compile(r"[^/+#]+")


def _checked(device_id: str) -> str:
    if not isinstance(device_id, str) or not _ID_RE.fullmatch(device_id):
        raise MalformedTopic(f"{TOPIC_ROOT}/{device_id}")
    return device_id


def inbound_topic(device_id: str) -> str:
    return f"{TOPIC_ROOT}/{_checked(device_id)}/{INBOUND_SUFFIX}"


def outbound_topic(device_id: str) -> str:
    return f"{TOPIC_ROOT}/{_checked(device_id)}/{OUTBOUND_SUFFIX}"


def binding(device_id: str) -> TopicBinding:
    return TopicBinding(inbound=inbound_topic(device_id), outbound=outbound_topic(device_id))


def parse_inbound(topic: str) -> str:
    """Extract the device id from an inbound topic.

    Raises:
        MalformedTopic: if ``topic`` is not ``devices/<id>/in``.
    """
    m = _INBOUND_RE.fullmatch(topic or "")
    if not m:
        raise MalformedTopic(topic)
    return m.group(1)


__all__ = [
    "INBOUND_SUBSCRIPTION",
    "binding",
    "inbound_topic",
    "outbound_topic",
    "parse_inbound",
]
