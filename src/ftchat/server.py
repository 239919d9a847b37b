import asyncio
import logging
import signal
import sys
from typing import List, Optional, Set

from . import messages
from .common import write_line
from .config import OVERFLOW_REJECT, ServerConfig, build_arg_parser, config_from_args
from .connection import REASON_SHUTDOWN, Connection
from .errors import ConfigError
from .registry import Registry
from .sweeper import LivenessSweeper

log = logging.getLogger("ftchat.server")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ChatServer:
    """
    TCP front end.

      - one asyncio task per accepted stream, capped by a semaphore
        (``overflow=queue`` waits for a slot, ``overflow=reject`` refuses)
      - one LivenessSweeper task
      - stop() notifies and tears down every connection, waits
        ``shutdown_grace`` seconds, then cancels what is left
    """

    def __init__(self, config: Optional[ServerConfig] = None, registry: Optional[Registry] = None):
        self.config = (config or ServerConfig()).validate()
        self.registry = registry if registry is not None else Registry(self.config.history_length)
        self.sweeper = LivenessSweeper(
            self.registry,
            timeout=self.config.client_timeout,
            interval=self.config.activity_check_interval,
        )

        self._server: Optional[asyncio.AbstractServer] = None
        self._slots = asyncio.Semaphore(self.config.max_clients)
        self._connections: Set[Connection] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._accepting: bool = False
        self._stop_reason = ""
        self._stopped = asyncio.Event()

    # -----------------------------
    # Lifecycle
    # -----------------------------
    @property
    def port(self) -> int:
        """Bound port (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.config.host, self.config.port)
        self._accepting = True
        self.sweeper.start()
        log.info("Server listening on %s:%s", self.config.host, self.port)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self, reason: str = "") -> None:
        if not self._accepting:
            return
        self._accepting = False
        self._stop_reason = reason
        log.info("SERVER SHUTDOWN initiated. Reason: %s", reason or "-")

        # 1. no new connections, no new members
        self.registry.stop_accepting()
        if self._server is not None:
            self._server.close()

        # 2. no more sweeps
        await self.sweeper.stop()

        # 3. notify and tear down every connection
        connections = list(self._connections)
        log.info("Disconnecting %d connection(s)...", len(connections))
        notice = messages.shutting_down(reason)
        for conn in connections:
            conn.send(notice)
        closing = asyncio.gather(*(c.close(REASON_SHUTDOWN) for c in connections), return_exceptions=True)
        try:
            results = await asyncio.wait_for(closing, self.config.shutdown_grace)
        except asyncio.TimeoutError:
            log.warning("Connections still closing after %.1f seconds, aborting them.", self.config.shutdown_grace)
            for conn in connections:
                conn.abort()
        else:
            for conn, result in zip(connections, results):
                if isinstance(result, BaseException):
                    log.error("Error closing %s during shutdown: %r", conn.describe(), result)

        # 4. brief grace period, then force
        pending = {t for t in self._tasks if not t.done()}
        if pending:
            _, pending = await asyncio.wait(pending, timeout=self.config.shutdown_grace)
        if pending:
            log.warning("%d connection task(s) did not finish, cancelling.", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.wait(pending)

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), self.config.shutdown_grace)
            except asyncio.TimeoutError:
                log.warning("Listening socket did not close in time.")

        log.info("SERVER SHUTDOWN complete.")
        self._stopped.set()

    # -----------------------------
    # Per-connection task
    # -----------------------------
    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            if not self._accepting:
                await self._refuse(writer, messages.shutting_down(self._stop_reason))
                return

            if self.config.overflow == OVERFLOW_REJECT and self._slots.locked():
                log.warning("Connection cap (%d) reached, refusing %s", self.config.max_clients,
                            writer.get_extra_info("peername"))
                await self._refuse(writer, messages.server_full())
                return

            async with self._slots:
                if not self._accepting:
                    await self._refuse(writer, messages.shutting_down(self._stop_reason))
                    return
                conn = Connection(
                    reader,
                    writer,
                    self.registry,
                    send_timeout=self.config.send_timeout,
                    queue_size=self.config.outbound_queue_size,
                )
                self._connections.add(conn)
                try:
                    await conn.run()
                finally:
                    self._connections.discard(conn)
        finally:
            if task is not None:
                self._tasks.discard(task)
            if not writer.is_closing():
                writer.close()

    async def _refuse(self, writer: asyncio.StreamWriter, line: Optional[str]) -> None:
        try:
            if line is not None:
                await asyncio.wait_for(write_line(writer, line), self.config.send_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            log.debug("Could not send refusal: %s", e)
        finally:
            writer.close()


# -----------------------------
# CLI
# -----------------------------
async def _run(config: ServerConfig) -> int:
    server = ChatServer(config)
    try:
        await server.start()
    except OSError as e:
        log.critical("Could not bind to %s:%s: %s", config.host, config.port, e)
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Server running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    finally:
        await server.stop("Shutdown requested.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    try:
        config = config_from_args(args)
    except ConfigError as e:
        parser.error(str(e))

    return asyncio.run(_run(config))


if __name__ == "__main__":
    sys.exit(main())
