"""
An event is the unit of data transferred by the topicwire protocol. Each
event on the stream is framed as a newline terminated topic line followed
by a length prefixed payload.

.. code-block:: console

    +----------------+-------------------+--------------------+
    |  topic         |  header           |  payload           |
    +----------------+-------------------+--------------------+
    |  UTF-8 ... \\n  |  Payload_Length   |  DATA ....         |
    |                |  uint32 (BE)      |                    |
    +----------------+-------------------+--------------------+

Events with an empty payload are valid. Multiple events may be sent
back-to-back on the same stream without any additional framing.
"""

import struct

from typing import NamedTuple


TOPIC_DELIMITER = b"\n"

LENGTH_HEADER_FORMAT = ">I"
LENGTH_HEADER_SIZE = struct.calcsize(LENGTH_HEADER_FORMAT)

MAX_ENCODABLE_PAYLOAD_SIZE = 2 ** 32 - 1


class Event(NamedTuple):
    topic: str
    payload: bytes


def encode_event(topic: str, payload: bytes) -> bytes:
    """ Return the wire representation of an event.

    :param topic: the event topic. It must not contain a newline character
      as that is used to delimit the topic on the stream.

    :param payload: the opaque event payload.

    :raises TypeError: if the topic is not a str or the payload is not bytes.

    :raises ValueError: if the topic contains a newline, ends with a carriage
      return or the payload is too large to be described by the length header.
    """
    if not isinstance(topic, str):
        raise TypeError(f"topic must be a str, got {type(topic)}")

    if not isinstance(payload, (bytes, bytearray)):
        raise TypeError(f"payload must be bytes, got {type(payload)}")

    if "\n" in topic:
        raise ValueError("topic must not contain a newline")

    # Trailing carriage returns are stripped from topic lines when decoding
    if topic.endswith("\r"):
        raise ValueError("topic must not end with a carriage return")

    if len(payload) > MAX_ENCODABLE_PAYLOAD_SIZE:
        raise ValueError(
            f"payload size ({len(payload)}) exceeds maximum encodable size "
            f"({MAX_ENCODABLE_PAYLOAD_SIZE})"
        )

    header = struct.pack(LENGTH_HEADER_FORMAT, len(payload))
    return topic.encode("utf-8") + TOPIC_DELIMITER + header + bytes(payload)
