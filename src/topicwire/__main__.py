"""
Run a topicwire event server that logs every event it receives.

.. code-block:: console

    $ topicwire --address 127.0.0.1:8080 --log-level info

"""
import argparse
import asyncio
import logging
import sys

from topicwire.errors import BindError
from topicwire.event import Event
from topicwire.runner import run
from topicwire.stream.event import EventStreamServer
from topicwire.stream.protocols.event import DEFAULT_TOPIC_BUFFER_SIZE, MAX_PAYLOAD_SIZE


logger = logging.getLogger("topicwire")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="topicwire", description="Topic framed event server"
    )
    parser.add_argument(
        "--address",
        metavar="<host:port>",
        type=str,
        default="127.0.0.1:8080",
        help="The address the server will listen on. Default is '127.0.0.1:8080'.",
    )
    parser.add_argument(
        "--topic-buffer-size",
        metavar="<bytes>",
        type=int,
        default=DEFAULT_TOPIC_BUFFER_SIZE,
        help=f"Maximum topic line length in bytes. Default is {DEFAULT_TOPIC_BUFFER_SIZE}.",
    )
    parser.add_argument(
        "--max-payload-size",
        metavar="<bytes>",
        type=int,
        default=MAX_PAYLOAD_SIZE,
        help=f"Maximum payload length in bytes. Default is {MAX_PAYLOAD_SIZE}.",
    )
    parser.add_argument(
        "--read-timeout",
        metavar="<seconds>",
        type=float,
        default=None,
        help="Close connections that receive no data for this long. Default is no timeout.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "error"],
        default="info",
        help="Logging level. Default is 'info'.",
    )
    return parser


def log_event(server: EventStreamServer, event: Event, peer_id: bytes) -> None:
    logger.info(
        f"Event from {peer_id}: topic={event.topic!r}, {len(event.payload)} bytes"
    )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s.%(msecs)03.0f [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=getattr(logging, args.log_level.upper()),
    )

    svr = EventStreamServer(
        on_event=log_event,
        topic_buffer_size=args.topic_buffer_size,
        max_payload_size=args.max_payload_size,
        read_timeout=args.read_timeout,
    )

    exit_code = 0

    async def start():
        nonlocal exit_code
        try:
            await svr.start(args.address)
        except (BindError, ValueError) as exc:
            logger.error(f"Error creating the server: {exc}")
            exit_code = 1
            asyncio.get_running_loop().stop()

    run(start, finalize=svr.stop)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
