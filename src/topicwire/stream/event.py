"""
The event endpoints use a protocol that delimits separate events on the
stream using a newline terminated topic line followed by a frame header
holding the length of the payload.

.. code-block:: console

    +----------------+-------------------+--------------------+
    |  topic         |  header           |  payload           |
    +----------------+-------------------+--------------------+
    |  UTF-8 ... \\n  |  Payload_Length   |  DATA ....         |
    |                |  uint32 (BE)      |                    |
    +----------------+-------------------+--------------------+

Events with an empty payload are valid.

"""

from topicwire.stream.endpoint import StreamClient, StreamServer
from topicwire.stream.protocols.event import EventStreamProtocol


class EventStreamClient(StreamClient):

    protocol_class = EventStreamProtocol


class EventStreamServer(StreamServer):

    protocol_class = EventStreamProtocol
