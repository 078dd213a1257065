import asyncio
import enum
import inspect
import logging
import random
import socket

from ssl import SSLContext
from topicwire.errors import BindError
from topicwire.stream.protocols.base import BaseStreamProtocol
from topicwire.stream.protocols.event import DEFAULT_TOPIC_BUFFER_SIZE, MAX_PAYLOAD_SIZE
from typing import List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)


# The percentage of jitter to apply to the reconnection backoff time
BACKOFF_JITTER = 0.05


def parse_address(address: str) -> Tuple[str, int]:
    """ Split a ``host:port`` string into a host and an integer port.

    An IPv6 host may be enclosed in brackets, e.g. ``[::1]:8080``. An empty
    host means all interfaces.

    :raises ValueError: if the address is not a valid ``host:port`` string.
    """
    if not isinstance(address, str):
        raise ValueError(f"address must be a 'host:port' string, got {address!r}")

    host, sep, port_str = address.rpartition(":")
    if not sep:
        raise ValueError(f"address must be a 'host:port' string, got {address!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in address {address!r}") from None

    if not 0 <= port <= 65535:
        raise ValueError(f"Port out of range in address {address!r}")

    return host, port


class StreamEndpointModes(enum.Enum):
    Server = 0
    Client = 1


class StreamEndpoint(object):
    """
    An endpoint is used to exchange events with other stream oriented
    interfaces.

    An endpoint may operate in either a client or server mode. When operating in
    client mode it will support connecting to a server. When operating in server
    mode it will support binding to a port and will listen for connections from
    clients.

    Users of an endpoint are expected to pass callback functions to receive
    notifications of endpoint events such as new peers joining, existing peers
    leaving and receipt of events.
    """

    # Concrete endpoint implementations must define the protocol object to
    # be instantiated to handle a connection with a peer. The protocol is
    # expected to inherit from the
    # :ref:`topicwire.stream.protocols.base.BaseStreamProtocol` interface.
    protocol_class = None

    is_server: bool = False

    def __init__(
        self,
        on_event=None,
        on_started=None,
        on_stopped=None,
        on_peer_available=None,
        on_peer_unavailable=None,
        topic_buffer_size: int = DEFAULT_TOPIC_BUFFER_SIZE,
        max_payload_size: int = MAX_PAYLOAD_SIZE,
        read_timeout: Optional[float] = None,
        backoff_maximum: int = 10,
        loop=None,
        **kwargs,
    ):
        """ Initialise Endpoint

        :param on_event: A callback function that will be called when a
          protocol extracts an event from the stream. It is called with the
          endpoint, the event and a ``peer_id`` keyword argument. If it
          returns an awaitable then that is scheduled as a task.

        :param on_started: A callback that will be called when the endpoint has
          been started. This callback simply notifies that the endpoint has been
          started and does not necessarily indicate that the endpoint is ready to
          send and receive events. Use the `on_peer_available` method to know
          when the endpoint is ready to send and receive events.

        :param on_stopped: A callback that will be called when the endpoint has
          been stopped.

        :param on_peer_available: A callback function that will be called when
          the protocol is connected with a transport. In this state the protocol
          can send and receive events.

        :param on_peer_unavailable: A callback function that will be called when
          the protocol has lost the connection with its transport. In this state
          the protocol can not send or receive events.

        :param topic_buffer_size: The maximum number of bytes a topic line may
          occupy on the stream, including its delimiter.

        :param max_payload_size: The largest payload length accepted from a
          peer. Larger frames close the connection.

        :param read_timeout: An optional number of seconds after which a
          connection that has not received any data is closed.

        :param backoff_maximum: The maximum interval between reconnect attempts
          by an endpoint operating in client mode. Reconnect attempts backoff
          exponentially up to this maximum value. Default value is 10 seconds.

        :param loop: An optional event loop. If not supplied the running loop
          is used when the endpoint is started.
        """
        self.loop = loop
        self._on_event_handler = on_event
        self._on_started_handler = on_started
        self._on_stopped_handler = on_stopped
        self._on_peer_available_handler = on_peer_available
        self._on_peer_unavailable_handler = on_peer_unavailable

        self.topic_buffer_size = topic_buffer_size
        self.max_payload_size = max_payload_size
        self.read_timeout = read_timeout

        if self.protocol_class is None or not issubclass(
            self.protocol_class, BaseStreamProtocol
        ):
            raise Exception(
                f"Endpoint protocol class must be a subclass of BaseStreamProtocol, got {self.protocol_class}"
            )

        self._mode = (
            StreamEndpointModes.Server if self.is_server else StreamEndpointModes.Client
        )
        self._mode_str = self._mode.name
        self._peers = {}
        self._addr = ""
        self._port = 0
        self._family = 0
        self._ssl = None

        self._running = False

        # Client specific attributes
        self._reconnect = False
        self._backoff = 0
        self._backoff_maximum = backoff_maximum
        self._backoff_task = None
        self._connect_task = None

        # Server specific attributes
        self._listener = None
        self._listener_addr = None

        # Tasks running awaitable on_event handlers
        self._event_tasks = set()  # type: Set[asyncio.Task]

    @property
    def mode(self):
        """ Return the endpoint operating mode """
        return self._mode

    @property
    def running(self):
        """ Return the running state of the endpoint.

        A running endpoint simply indicates that the endpoint has been started.
        A running client endpoint may not actually be connected as it may be
        attempting reconnects, etc.
        """
        return self._running

    @property
    def bindings(self) -> Sequence[Tuple[str, int]]:
        """ Return a server endpoint's bound addresses. """
        return [self._listener_addr] if self._listener_addr else []

    @property
    def connections(self) -> Sequence[Tuple[str, int]]:
        """ Return the remote addresses of connected peers """
        return [prot.raddr for _prot_id, prot in self._peers.items()]

    @property
    def peers(self) -> List[bytes]:
        """ Return the identities of connected peers """
        return list(self._peers)

    async def start(
        self,
        address: str,
        family: int = socket.AF_UNSPEC,
        ssl: SSLContext = None,
        reconnect: bool = True,
    ) -> None:
        """ Start endpoint.

        For a client endpoint this would initiate a connection attempt to
        the specified address. For a server endpoint this would attempt to
        bind the server socket to the address.

        :param address: The ``host:port`` address to connect or bind to. An
          empty host means all interfaces and a port of 0 results in an
          ephemeral port being used.

        :param family: An optional address family integer from the socket module.
          Defaults to socket.AF_UNSPEC which lets the host name decide.

        :param ssl: an optional sslContext for use with TLS.

        :param reconnect: A boolean flag that determines whether a client
          endpoint should automatically attempt to reconnect if the connection
          is dropped. Only used for endpoints operating as a client.

        :raises BindError: if a server endpoint can not bind to the address.
        """
        if self.running:
            return

        addr, port = parse_address(address)

        logger.debug(f"Starting {self._mode_str}")

        self.loop = self.loop or asyncio.get_running_loop()
        self._addr = addr
        self._port = port
        self._family = family
        self._ssl = ssl
        self._reconnect = reconnect
        self._running = True

        if self.is_server:
            try:
                await self._listen(addr=addr, port=port, family=family, ssl=ssl)
            except BindError:
                self._running = False
                raise
        else:
            self._connect_task = self.loop.create_task(
                self._connect(
                    addr=addr, port=port, family=family, ssl=ssl, reconnect=reconnect
                )
            )
            await self._connect_task

    async def stop(self):
        """ Stop endpoint.

        A client endpoint will disconnect and halt any further reconnection
        attempts. A server endpoint will unbind its listening socket to prevent
        any further connection and then disconnect any existing client
        connections.

        """
        if not self.running:
            return

        logger.debug(f"Stopping {self._mode_str}")

        if self.is_server:
            # Close listener to prevent any more client connections
            if self._listener:
                self._listener.close()
            await self._disconnect_peers()
            if self._listener:
                await self._listener.wait_closed()
            self._listener = None
            self._listener_addr = None
        else:
            # Prevent automatic reconnects upon disconnect
            self._reconnect = False

            # Cancel any in-progress backoff tasks
            if self._backoff_task:
                self._backoff_task.cancel()
            self._backoff_task = None

            # Cancel any in-progress connection tasks
            if self._connect_task:
                self._connect_task.cancel()
            self._connect_task = None

            await self._disconnect_peers()

        await self._cancel_event_tasks()

        self._addr = ""
        self._port = 0
        self._family = 0
        self._ssl = None
        self._backoff = 0
        self._running = False

        # Don't let poor user code break the library
        try:
            if self._on_stopped_handler:
                self._on_stopped_handler(self)
        except Exception:
            logger.exception("Error in on_stopped callback method")

    def _protocol_factory(self):
        """ Return a protocol instance to handle a new peer connection """
        return self.protocol_class(
            on_event=self.on_event,
            on_peer_available=self.on_peer_available,
            on_peer_unavailable=self.on_peer_unavailable,
            topic_buffer_size=self.topic_buffer_size,
            max_payload_size=self.max_payload_size,
            read_timeout=self.read_timeout,
        )

    async def _listen(
        self, addr: str, port: int, family: int = socket.AF_UNSPEC, ssl: SSLContext = None
    ) -> None:
        """ Bind server to begin handling client connections.

        Once bound, the event loop accepts connections in the background and
        creates an independent protocol instance for each one.

        :param addr: The address to bind to. An empty string means all
          interfaces.

        :param port: The port to bind to. 0 results in an ephemeral port
          being used.

        :param family: An optional address family integer from the socket
          module.

        :param ssl: an optional sslContext for use with TLS.

        """
        logger.debug(f"Starting to listen on {addr}:{port}")

        try:
            self._listener = await self.loop.create_server(
                self._protocol_factory,
                host=addr or None,
                port=port,
                family=family,
                ssl=ssl,
            )
        except Exception as exc:
            err_str = f"Unexpected error binding to {addr}:{port}: {exc}"
            logger.error(err_str)
            raise BindError(err_str) from None

        _laddr = self._listener.sockets[0].getsockname()
        # Depending on the socket family, the address may be a 2-tuple for
        # IPv4 or a 4-tuple for IPv6.
        if len(_laddr) == 4:
            # AF_INET6 returns a four-tuple (host, port, flowinfo, scopeid)
            host, port, flowinfo, scopeid = _laddr
            _laddr = (host, port)
        self._listener_addr = _laddr
        logger.info(f"Listening on {self._listener_addr[0]}:{self._listener_addr[1]}")

        # Don't let poor user code break the library
        try:
            if self._on_started_handler:
                self._on_started_handler(self)
        except Exception:
            logger.exception("Error in on_started callback method")

    async def _connect(
        self,
        addr: str,
        port: int,
        family: int = socket.AF_UNSPEC,
        ssl: SSLContext = None,
        reconnect: bool = True,
    ) -> None:
        """ Connect the client to a server

        :param addr: The address to connect to.

        :param port: The port to connect to.

        :param family: An optional address family integer from the socket
          module.

        :param ssl: an optional sslContext for use with TLS.

        """
        logger.debug(f"Starting to connect to {addr}:{port}")

        # Start from a clean state
        await self._disconnect_peers()

        # A small amount of jitter is added to the connection backoff time, to
        # help improve performance in situations where thousands of clients
        # simultaneously disconnect from a service and attempt to reconnect.
        jitter = self._backoff * BACKOFF_JITTER
        min_backoff_value = max(0, self._backoff - jitter)
        max_backoff_value = self._backoff + jitter
        backoff_duration = random.uniform(min_backoff_value, max_backoff_value)
        if backoff_duration:
            logger.info(
                f"Waiting {backoff_duration:.1f} seconds before connection attempt"
            )
            # The wait is implemented as a task and a reference to it is held
            # so it can be easily cancelled later.
            self._backoff_task = self.loop.create_task(asyncio.sleep(backoff_duration))
            try:
                await self._backoff_task
                self._backoff_task = None
            except asyncio.CancelledError:
                return

        # Determine the next backoff time up to a maximum. E.g. 1.0, 2.5, 4.74...
        self._backoff = min(
            self._backoff_maximum, self._backoff + (self._backoff / 2) + 1
        )

        _protocol = None
        try:
            _transport, _protocol = await self.loop.create_connection(
                self._protocol_factory, host=addr, port=port, ssl=ssl, family=family
            )
            # Upon a successful connection the protocol will call the
            # on_peer_available method at which point the endpoint will
            # store a reference to the protocol along with the peer_id.

            # Reset some attributes upon successful connection
            self._backoff = 0
            self._connect_task = None

            try:
                if self._on_started_handler:
                    self._on_started_handler(self)
            except Exception:
                logger.exception("Error in on_started callback method")

        except (ConnectionRefusedError, OSError) as exc:
            # When connecting to "localhost", some systems try to connect to
            # both 127.0.0.1 and ::1 resulting in an OSError(Multiple errors
            # occurred) that wraps two ConnectionRefusedErrors
            logger.error(f"Connection to {addr}:{port} was refused: {exc}")
        except Exception as exc:
            logger.exception(f"Unexpected error connecting to {addr}:{port}: {exc}")

        if _protocol is None and self._reconnect:
            logger.info(f"Attempting reconnect in {self._backoff} seconds")
            self._connect_task = self.loop.create_task(
                self._connect(
                    addr=addr, port=port, family=family, ssl=ssl, reconnect=reconnect
                )
            )

    async def _disconnect_peers(self):
        """ Disconnect peers """
        for prot in list(self._peers.values()):
            prot.close()
            # Allow event loop to briefly iterate so that transport can close
            await asyncio.sleep(0)

    def on_peer_available(self, prot, peer_id: bytes):
        """ Called from a protocol instance when its transport is available.

        This means that the peer is ready for sending or receiving events.

        :param prot: The protocol instance responsible for the peer.

        :param peer_id: The peer's unique identity.
        """
        self._peers[peer_id] = prot

        if self.is_server:
            logger.info(f"New connection from {prot.raddr}, peer {peer_id}")

        # Don't let poor user code break the library
        try:
            if self._on_peer_available_handler:
                self._on_peer_available_handler(self, peer_id)
        except Exception:
            logger.exception("Error in on_peer_available callback method")

    def on_peer_unavailable(self, prot, peer_id: bytes):
        """ Called from a protocol instance when its transport is no longer
        available. No further events can be sent or received from the peer.

        :param prot: The protocol instance responsible for the peer.

        :param peer_id: The peer's unique identity.
        """
        # peer connection sequence may never have reached
        try:
            del self._peers[peer_id]
        except KeyError:
            pass

        # Don't let poor user code break the library
        try:
            if self._on_peer_unavailable_handler:
                self._on_peer_unavailable_handler(self, peer_id)
        except Exception:
            logger.exception("Error in on_peer_unavailable callback method")

        if not self.is_server:
            if self._reconnect:
                logger.info(f"Attempting reconnect in {self._backoff} seconds")
                self._connect_task = self.loop.create_task(
                    self._connect(
                        addr=self._addr,
                        port=self._port,
                        family=self._family,
                        ssl=self._ssl,
                        reconnect=self._reconnect,
                    )
                )

    def on_event(self, prot, peer_id: bytes, event) -> None:
        """ Called by a protocol when it extracts an event from a peer's stream.

        :param prot: The protocol instance that received the event.

        :param peer_id: The peer's unique identity.

        :param event: The decoded event.
        """
        if self._on_event_handler:
            try:
                maybe_awaitable = self._on_event_handler(self, event, peer_id=peer_id)
                if inspect.isawaitable(maybe_awaitable):
                    task = self.loop.create_task(maybe_awaitable)
                    self._event_tasks.add(task)
                    task.add_done_callback(self._on_event_task_done)
            except Exception:
                logger.exception("Error in on_event callback method")

    def _on_event_task_done(self, task: asyncio.Task) -> None:
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in on_event callback method", exc_info=exc)

    async def _cancel_event_tasks(self):
        """ Cancel on_event handler tasks that are still running """
        tasks = list(self._event_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class StreamServer(StreamEndpoint):
    """ An endpoint configured to operate as a server """

    is_server = True


class StreamClient(StreamEndpoint):
    """ An endpoint configured to operate as a client """

    def publish(self, topic: str, payload: bytes, *, peer_id: bytes = None):
        """ Publish an event to the connected server.

        :param topic: the event topic. It must not contain a newline.

        :param payload: a bytes object containing the event payload.

        :param peer_id: The unique peer identity to send this event to. A
          client typically has a single peer so this argument can
          conveniently be left unspecified.
        """
        if not self._peers:
            logger.error("No peers to publish event to!")
            return

        peer_ids = [peer_id] if peer_id else list(self._peers)

        for _peer_id in peer_ids:
            prot = self._peers.get(_peer_id)
            if prot is None:
                logger.error(f"Unknown peer {_peer_id}, can't publish event to it")
                continue
            prot.send(topic, payload)
