import asyncio
import binascii
import logging
import os

from topicwire.errors import ReadTimeout, TopicwireError
from typing import Optional, Tuple


logger = logging.getLogger(__name__)


class BaseStreamProtocol(asyncio.Protocol):
    """
    This class implements the connection management expected by an Endpoint.

    It tracks the peer addresses and identity, notifies the endpoint when the
    peer becomes available or unavailable and optionally closes connections
    that stay idle for longer than a read timeout. It does not extract
    anything from the stream. Subclasses implement the framing by extending
    :meth:`data_received`.
    """

    def __init__(
        self,
        on_peer_available=None,
        on_peer_unavailable=None,
        read_timeout: Optional[float] = None,
        **kwargs,
    ):
        """

        :param on_peer_available: A callback function that will be called when
          the protocol is connected with a transport. In this state the protocol
          can send and receive messages.

        :param on_peer_unavailable: A callback function that will be called when
          the protocol has lost the connection with its transport. In this state
          the protocol can not send or receive messages.

        :param read_timeout: The number of seconds a connection may go without
          receiving any data before it is closed. Defaults to None which means
          connections never time out.
        """
        self._on_peer_available_handler = on_peer_available
        self._on_peer_unavailable_handler = on_peer_unavailable
        self.read_timeout = read_timeout
        self._read_timer = None  # type: Optional[asyncio.TimerHandle]
        self._remote_address = None  # type: Optional[Tuple[str, int]]
        self._local_address = None  # type: Optional[Tuple[str, int]]
        self._peercert = None
        self._identity = b""

        self.transport = None

    @property
    def raddr(self) -> Tuple[str, int]:
        """ Return the remote address the protocol is connected with """
        return self._remote_address

    @property
    def laddr(self) -> Tuple[str, int]:
        """ Return the local address the protocol is using """
        return self._local_address

    @property
    def identity(self):
        """ Return the protocol's unique identifier.

        A protocol's unique identity distinguishes a peer connection from
        every other connection held by the same endpoint.
        """
        return self._identity

    def connection_made(self, transport):
        """
        Called by the event loop when the protocol is connected with a transport.
        """
        self.transport = transport

        # Depending on the socket family, the address may be a 2-tuple for
        # IPv4 or a 4-tuple for IPv6. AF_INET6 returns a four-tuple (host,
        # port, flowinfo, scopeid) which is converted to the expected 2-tuple.
        def get_host_port(info) -> Tuple[str, int]:
            if info and len(info) == 4:
                host, port, _flowinfo, _scopeid = info
                info = (host, port)
            return info

        self._remote_address = get_host_port(transport.get_extra_info("peername"))
        self._local_address = get_host_port(transport.get_extra_info("sockname"))
        self._peercert = transport.get_extra_info("peercert")
        self._identity = binascii.hexlify(os.urandom(5))

        logger.debug(
            f"Connection made. id={self._identity}, "
            f"laddr={self._local_address}, "
            f"raddr={self._remote_address}, "
            f"peercert={self._peercert}"
        )

        self._restart_read_timer()

        # Don't let user code break the library
        try:
            if self._on_peer_available_handler:
                self._on_peer_available_handler(self, self._identity)
        except Exception:
            logger.exception("Error in on_peer_available callback method")

    def connection_lost(self, exc):
        """
        Called by the event loop when the protocol is disconnected from a transport.
        """
        logger.debug(
            f"Connection lost. id={self._identity}, "
            f"laddr={self._local_address}, "
            f"raddr={self._remote_address}, "
            f"reason={exc}"
        )

        self._cancel_read_timer()

        # Don't let user code break the library
        try:
            if self._on_peer_unavailable_handler:
                self._on_peer_unavailable_handler(self, self._identity)
        except Exception:
            logger.exception("Error in on_peer_unavailable callback method")

        if self.transport:
            self.transport.close()  # resolves a sslproto.py related warning.

        self.transport = None
        self._remote_address = None
        self._local_address = None
        self._identity = None

    def close(self):
        """
        Close this connection.
        """
        logger.debug(
            f"Closing connection. id={self._identity}, "
            f"laddr={self._local_address}, raddr={self._remote_address}"
        )

        self._cancel_read_timer()

        if self.transport:
            self.transport.close()

    def abort(self, exc: TopicwireError):
        """ Log a connection fatal error and close the connection.

        :param exc: the error that terminated the connection.
        """
        self.log_connection_error(exc, "Disconnecting")
        self.close()

    def log_connection_error(self, exc: TopicwireError, action: str):
        """ Log an error that ended the connection with the peer """
        logger.error(
            f"{type(exc).__name__}: {exc}. "
            f"{action} peer {self._identity}, raddr={self._remote_address}."
        )

    def data_received(self, data):
        """ Process some bytes received from the transport.

        The base implementation only restarts the read timer. Subclasses must
        extend this method to extract messages from the stream.
        """
        self._restart_read_timer()

    def _restart_read_timer(self):
        if self.read_timeout is None or self.transport is None:
            return

        self._cancel_read_timer()
        loop = asyncio.get_running_loop()
        self._read_timer = loop.call_later(self.read_timeout, self._on_read_timeout)

    def _cancel_read_timer(self):
        if self._read_timer:
            self._read_timer.cancel()
        self._read_timer = None

    def _on_read_timeout(self):
        self._read_timer = None
        self.abort(ReadTimeout(f"No data received for {self.read_timeout} seconds"))
