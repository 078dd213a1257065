import enum
import logging
import struct

from topicwire.errors import (
    FramingError,
    IncompleteLength,
    IncompletePayload,
    InvalidTopicEncoding,
    PayloadTooLarge,
    TopicTooLong,
    TransportError,
)
from topicwire.event import (
    LENGTH_HEADER_FORMAT,
    LENGTH_HEADER_SIZE,
    TOPIC_DELIMITER,
    Event,
    encode_event,
)
from typing import Optional

from .base import BaseStreamProtocol

logger = logging.getLogger(__name__)


DEFAULT_TOPIC_BUFFER_SIZE = 1024

MAX_PAYLOAD_SIZE = 16 * 1024 * 1024  # limit maximum payload size as a precaution


class ProtocolStates(enum.Enum):
    WAIT_TOPIC = 0
    WAIT_LENGTH = 1
    WAIT_PAYLOAD = 2
    CLOSED = 3


class EventStreamProtocol(BaseStreamProtocol):
    """
    The event protocol extracts events from a stream. Each event is framed
    as a newline terminated UTF-8 topic line, a uint32 big-endian header
    holding the payload length and then the payload itself.

    .. code-block:: console

        +----------------+-------------------+--------------------+
        |  topic         |  header           |  payload           |
        +----------------+-------------------+--------------------+
        |  UTF-8 ... \\n  |  Payload_Length   |  DATA ....         |
        |                |  uint32 (BE)      |                    |
        +----------------+-------------------+--------------------+

    Upon extracting an event from the stream the protocol passes it to the
    on_event handler. Any framing error closes the connection because the
    stream can not be realigned with the frame boundaries.
    """

    def __init__(
        self,
        on_event=None,
        on_peer_available=None,
        on_peer_unavailable=None,
        topic_buffer_size: int = DEFAULT_TOPIC_BUFFER_SIZE,
        max_payload_size: int = MAX_PAYLOAD_SIZE,
        read_timeout: Optional[float] = None,
        **kwargs,
    ):
        """
        :param on_event: A callback function that will be passed each event
          that the protocol extracts from the stream.

        :param topic_buffer_size: The maximum number of bytes, including the
          delimiter, that a topic line may occupy. Defaults to 1024.

        :param max_payload_size: The largest payload length accepted from a
          peer. Defaults to 16 MiB.
        """
        super().__init__(
            on_peer_available=on_peer_available,
            on_peer_unavailable=on_peer_unavailable,
            read_timeout=read_timeout,
        )
        self._on_event_handler = on_event
        self.topic_buffer_size = topic_buffer_size
        self.max_payload_size = max_payload_size
        self._buffer = bytearray()
        self._state = ProtocolStates.WAIT_TOPIC
        self._topic = None  # type: Optional[str]
        self._payload_len = 0

    @property
    def state(self) -> ProtocolStates:
        """ Return the current state of the frame parser """
        return self._state

    def send(self, topic: str, payload: bytes, **kwargs):
        """ Sends an event by writing its frame to the transport.

        :param topic: the event topic.

        :param payload: a bytes object containing the event payload.
        """
        try:
            msg = encode_event(topic, payload)
        except (TypeError, ValueError) as exc:
            logger.error(f"Can't send event: {exc}")
            return

        topic_line_size = len(topic.encode("utf-8")) + len(TOPIC_DELIMITER)
        if topic_line_size > self.topic_buffer_size:
            logger.error(
                f"Can't send event: topic line size ({topic_line_size}) exceeds "
                f"topic buffer size ({self.topic_buffer_size})"
            )
            return

        logger.debug(f"Sending event with {len(msg)} bytes")

        self.transport.write(msg)

    def data_received(self, data):
        """ Process some bytes received from the transport.

        Upon receiving some bytes from the stream they are added to a buffer
        and then any events in the buffer are extracted. The parser moves
        from waiting for a topic line, to waiting for the length header, to
        waiting for the payload and then back to waiting for a topic line.

        This method should support the worst case scenario of receiving a
        single byte at a time, however, a more likely scenario is receiving
        one or more events at once.
        """
        if self._state == ProtocolStates.CLOSED:
            return

        super().data_received(data)
        self._buffer.extend(data)

        try:
            self._process_buffer()
        except FramingError as exc:
            self.abort(exc)

    def eof_received(self):
        """ Called when the peer has closed its side of the stream.

        A peer may only close the stream on a frame boundary. Any partially
        received frame is reported as an error.
        """
        if self._state == ProtocolStates.WAIT_TOPIC and not self._buffer:
            logger.debug(f"Peer {self._identity} closed the stream")
        elif self._state == ProtocolStates.WAIT_TOPIC:
            # The topic line was never terminated so it was never followed
            # by its length header either.
            self.abort(
                IncompleteLength(
                    f"Stream closed after {len(self._buffer)} bytes of an "
                    f"unterminated topic line"
                )
            )
        elif self._state == ProtocolStates.WAIT_LENGTH:
            self.abort(
                IncompleteLength(
                    f"Stream closed after {len(self._buffer)} of "
                    f"{LENGTH_HEADER_SIZE} length bytes"
                )
            )
        elif self._state == ProtocolStates.WAIT_PAYLOAD:
            self.abort(
                IncompletePayload(
                    f"Stream closed after {len(self._buffer)} of "
                    f"{self._payload_len} payload bytes"
                )
            )

        # Returning a false value lets the transport close itself.
        return False

    def connection_lost(self, exc):
        if exc is not None and self._state != ProtocolStates.CLOSED:
            self.log_connection_error(TransportError(str(exc) or repr(exc)), "Lost")
        self._state = ProtocolStates.CLOSED
        self._buffer.clear()
        super().connection_lost(exc)

    def abort(self, exc):
        self._state = ProtocolStates.CLOSED
        self._buffer.clear()
        super().abort(exc)

    def _process_buffer(self):
        """ Extract every complete event held in the buffer.

        Each step consumes exactly the bytes it interprets from the front of
        the buffer so the next step only ever sees unread bytes.
        """
        while self._state != ProtocolStates.CLOSED:
            if self._state == ProtocolStates.WAIT_TOPIC:
                eol = self._buffer.find(TOPIC_DELIMITER, 0, self.topic_buffer_size)
                if eol == -1:
                    if len(self._buffer) >= self.topic_buffer_size:
                        raise TopicTooLong(
                            f"No topic delimiter found within "
                            f"{self.topic_buffer_size} bytes"
                        )
                    # There is not enough bytes to extract the topic yet.
                    break

                line = bytes(self._buffer[: eol + 1])
                del self._buffer[: eol + 1]
                try:
                    self._topic = line.decode("utf-8").rstrip("\r\n")
                except UnicodeDecodeError as exc:
                    raise InvalidTopicEncoding(
                        f"Topic is not valid UTF-8: {exc}"
                    ) from None
                self._state = ProtocolStates.WAIT_LENGTH

            elif self._state == ProtocolStates.WAIT_LENGTH:
                if len(self._buffer) < LENGTH_HEADER_SIZE:
                    # There is not enough bytes to extract the header yet.
                    break

                (payload_len,) = struct.unpack(
                    LENGTH_HEADER_FORMAT, self._buffer[:LENGTH_HEADER_SIZE]
                )
                del self._buffer[:LENGTH_HEADER_SIZE]
                if payload_len > self.max_payload_size:
                    raise PayloadTooLarge(
                        f"Payload size ({payload_len}) exceeds maximum payload "
                        f"size ({self.max_payload_size})"
                    )
                self._payload_len = payload_len
                self._state = ProtocolStates.WAIT_PAYLOAD

            elif self._state == ProtocolStates.WAIT_PAYLOAD:
                if len(self._buffer) < self._payload_len:
                    # There is not enough bytes to extract the payload yet.
                    break

                payload = bytes(self._buffer[: self._payload_len])
                del self._buffer[: self._payload_len]
                event = Event(self._topic, payload)
                self._topic = None
                self._payload_len = 0
                self._state = ProtocolStates.WAIT_TOPIC

                # Don't let user code break the library
                try:
                    if self._on_event_handler:
                        self._on_event_handler(self, self._identity, event)
                except Exception:
                    logger.exception("Error in on_event callback method")
