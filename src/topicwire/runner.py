import asyncio
import inspect
import logging

from asyncio import AbstractEventLoop
from signal import SIGTERM, SIGINT
from typing import Awaitable, Optional


logger = logging.getLogger(__name__)


def run(
    func: Optional[Awaitable[None]] = None,
    *,
    finalize: Optional[Awaitable[None]] = None,
    loop: AbstractEventLoop = None,
):
    """ Configure the event loop to react to signals and exceptions then
    run the provided coroutine and loop forever.

    Shutdown the event loop when a signal or exception is received or the
    supplied function explicitly requests the loop to stop.

    This function provides the common boilerplate needed to run a topicwire
    server as a process. It registers signal handlers that listen for SIGINT
    and SIGTERM that will stop the event loop and trigger application
    shutdown actions. It registers a global exception handler that will stop
    the loop and trigger application shutdown actions so that an exception in
    a spun off task is reported as soon as possible rather than when the
    loop finally stops.

    :param func: A coroutine to run before looping forever. This coroutine
      is typically the "main" coroutine from which all other work is spawned.
      The event loop will continue to run after the supplied coroutine
      completes.

    :param finalize: An optional coroutine to run when shutting down. Use this
      to perform any graceful cleanup activities such as stopping servers.

    :param loop: An optional event loop to run. If not supplied, or if the
      supplied loop is closed, a new event loop is created.

    """
    logger.debug("Application runner starting")

    if func:
        if not (inspect.isawaitable(func) or inspect.iscoroutinefunction(func)):
            raise Exception(
                "func must be a coroutine or a coroutine function "
                f"that takes no arguments, got {func}"
            )

    if finalize:
        if not (inspect.isawaitable(finalize) or inspect.iscoroutinefunction(finalize)):
            raise Exception(
                "finalize must be a coroutine or a coroutine function "
                f"that takes no arguments, got {finalize}"
            )

    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler(loop, sig):
        logger.info(f"Caught {sig.name}, stopping.")
        loop.call_soon(loop.stop)

    loop.add_signal_handler(SIGINT, signal_handler, loop, SIGINT)
    loop.add_signal_handler(SIGTERM, signal_handler, loop, SIGTERM)

    def exception_handler(loop, context):
        logger.error(f"Caught exception: {context}")
        loop.call_soon(loop.stop)

    loop.set_exception_handler(exception_handler)

    try:
        if func:
            if inspect.iscoroutinefunction(func):
                func = func()  # type: ignore
            assert func is not None
            loop.create_task(func)
        loop.run_forever()
    finally:
        logger.debug("Application shutdown sequence starting")
        if finalize:
            if inspect.iscoroutinefunction(finalize):
                finalize = finalize()  # type: ignore
            assert finalize is not None
            loop.run_until_complete(finalize)

        # Shutdown any outstanding tasks that are left running
        pending_tasks = asyncio.all_tasks(loop=loop)
        if pending_tasks:
            logger.debug(f"Cancelling {len(pending_tasks)} pending tasks.")
            for task in pending_tasks:
                logger.debug(f"Cancelling task: {task}")
                task.cancel()
            loop.run_until_complete(
                asyncio.gather(*pending_tasks, return_exceptions=True)
            )

        loop.run_until_complete(loop.shutdown_asyncgens())

        logger.debug("Application shutdown sequence complete")

        loop.remove_signal_handler(SIGINT)
        loop.remove_signal_handler(SIGTERM)
        asyncio.set_event_loop(None)
        loop.close()

        logger.debug("Application runner stopped")
