import asyncio
import enum
import logging
from typing import Optional

from . import messages
from .commands import HELP_LINES, Command, CommandKind, parse_command
from .common import encode_line, now, peer_address, read_line
from .errors import CommandError
from .identity import identity_problem
from .registry import AdmitResult, Registry

log = logging.getLogger("ftchat.connection")

SEND_TIMEOUT = 5.0
OUTBOUND_QUEUE_SIZE = 256

# Close reasons
REASON_QUIT = "quit"
REASON_DISCONNECTED = "disconnected"
REASON_TIMEOUT = "timeout"
REASON_SHUTDOWN = "shutdown"
REASON_DUPLICATE_ID = "duplicate_id"
REASON_OUTPUT_ERROR = "output_error"
REASON_NOT_RUNNING = "server_not_running"
REASON_INTERNAL_ERROR = "internal_error"


class ConnectionState(enum.Enum):
    REGISTERING = "registering"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """
    One accepted TCP stream.

    Lifecycle: REGISTERING -> ACTIVE -> CLOSING -> CLOSED, never backwards.
      - run() negotiates an identity, asks the registry to admit it, then reads
        one line at a time until /quit, end of stream or a forced close.
      - send() only queues; a dedicated writer task drains the queue with a
        bounded wait so a slow peer never blocks the registry.
      - close() is idempotent. The first caller starts the teardown (and the
        single registry removal) as its own task; every caller waits for it.
        Cancelling a caller does not interrupt the teardown.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        registry: Registry,
        *,
        send_timeout: float = SEND_TIMEOUT,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
    ):
        self.reader = reader
        self.writer = writer
        self.registry = registry
        self.send_timeout = send_timeout

        self.host, self.port = peer_address(writer)
        self.identity: Optional[str] = None
        self.state = ConnectionState.REGISTERING
        self.last_activity: float = now()
        self.close_reason: Optional[str] = None

        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
        self._writer_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"<Connection {self.describe()} {self.state.value}>"

    def describe(self) -> str:
        return self.identity or f"{self.host}:{self.port}"

    # -----------------------------
    # Member interface
    # -----------------------------
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def touch(self) -> None:
        self.last_activity = now()

    def send(self, line: str) -> None:
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        try:
            self._outbox.put_nowait(line)
        except asyncio.QueueFull:
            log.warning("Outbound queue full for %s, dropping connection.", self.describe())
            self._fail(REASON_OUTPUT_ERROR)

    async def close(self, reason: str) -> None:
        self._begin_close(reason)
        await self._closed.wait()

    def abort(self) -> None:
        """Cut a pending teardown short without waiting on the peer."""
        task = self._teardown_task
        if task is not None and not task.done():
            task.cancel()

    # -----------------------------
    # Main task
    # -----------------------------
    async def run(self) -> None:
        self._writer_task = asyncio.create_task(self._write_loop())
        log.info("Accepted connection from %s:%s", self.host, self.port)
        reason = REASON_DISCONNECTED
        try:
            if not await self._register():
                return
            if self.state is not ConnectionState.REGISTERING:
                # Torn down (e.g. output error) while the name was being accepted.
                return

            self.state = ConnectionState.ACTIVE
            result = await self.registry.admit(self)
            if result is AdmitResult.DUPLICATE:
                self.send(messages.error("Internal server error: Duplicate ID detected."))
                reason = REASON_DUPLICATE_ID
                return
            if result is AdmitResult.NOT_ACCEPTING:
                self.send(messages.error("Server is not accepting new clients."))
                reason = REASON_NOT_RUNNING
                return
            if result is AdmitResult.INACTIVE:
                return

            reason = await self._read_loop()

        except (ConnectionError, OSError) as e:
            if self.state is not ConnectionState.CLOSED:
                log.warning("Stream error for %s: %s", self.describe(), e)
        except Exception:
            log.exception("Unexpected error in connection handler for %s", self.describe())
            reason = REASON_INTERNAL_ERROR
        finally:
            await self.close(reason)
            log.info("Client handler finished for %s", self.identity or "(unregistered)")

    async def _next_line(self) -> Optional[str]:
        try:
            return await read_line(self.reader)
        except ValueError as e:
            # StreamReader.readline reports an over-long line as ValueError.
            raise ConnectionError(f"line too long: {e}") from e

    async def _register(self) -> bool:
        while self.state is ConnectionState.REGISTERING:
            self.send(messages.submit_name())
            line = await self._next_line()
            if line is None:
                log.info("Client %s disconnected before registration.", self.describe())
                return False
            self.touch()

            name = line.strip()
            problem = identity_problem(name)
            if problem:
                self.send(messages.error(problem))
                continue

            if self.registry.is_name_in_use(name):
                self.send(messages.name_in_use())
                continue

            self.identity = name
            self.send(messages.name_accepted(name))
            log.info("Client registered successfully as: %s", name)
            return True
        return False

    async def _read_loop(self) -> str:
        while self.is_active():
            line = await self._next_line()
            if line is None:
                if self.is_active():
                    log.info("Client %s disconnected unexpectedly.", self.identity)
                return REASON_DISCONNECTED

            self.touch()
            log.debug("Received from %s: %s", self.identity, line)

            try:
                command = parse_command(line, self.identity)
            except CommandError as e:
                self.send(messages.error(str(e)))
                continue

            if command.kind is CommandKind.QUIT:
                log.info("Client %s requested quit.", self.identity)
                return REASON_QUIT

            await self._dispatch(command)
        return REASON_DISCONNECTED

    async def _dispatch(self, command: Command) -> None:
        kind = command.kind
        if kind is CommandKind.CHAT:
            await self.registry.broadcast_send(self.identity, command.text)
        elif kind is CommandKind.PRIVATE:
            sent = await self.registry.private_send(self.identity, command.recipient, command.text)
            if not sent:
                log.debug("Private message from %s to %s not delivered.", self.identity, command.recipient)
        elif kind is CommandKind.WHO:
            await self.registry.list_members(self.identity)
        elif kind is CommandKind.HISTORY:
            await self.registry.send_history(self.identity)
        elif kind is CommandKind.HELP:
            for line in HELP_LINES:
                self.send(messages.info(line))
        elif kind is CommandKind.PING:
            log.debug("Ping received from %s", self.identity)

    # -----------------------------
    # Outbound
    # -----------------------------
    async def _write_loop(self) -> None:
        while True:
            line = await self._outbox.get()
            if line is None:
                return
            try:
                self.writer.write(encode_line(line))
                await asyncio.wait_for(self.writer.drain(), self.send_timeout)
            except (asyncio.TimeoutError, ConnectionError, OSError) as e:
                log.warning("Cannot send to %s (%s). Message: %s", self.describe(), str(e) or type(e).__name__, line)
                self._fail(REASON_OUTPUT_ERROR)
                return

    # -----------------------------
    # Teardown
    # -----------------------------
    def _begin_close(self, reason: str) -> bool:
        """Move to CLOSING and start the teardown task. False if already closing."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return False
        self.state = ConnectionState.CLOSING
        self.close_reason = reason
        self._teardown_task = asyncio.get_running_loop().create_task(self._teardown(reason))
        return True

    def _fail(self, reason: str) -> None:
        """Start teardown from a synchronous context (send path)."""
        self._begin_close(reason)

    async def _teardown(self, reason: str) -> None:
        log.info("Closing connection for %s. Reason: %s", self.describe(), reason)
        try:
            if self.identity is not None:
                # The removal finishes even if this task is aborted while waiting for the lock.
                await asyncio.shield(self.registry.remove(self.identity, reason, member=self))
        except Exception:
            log.exception("Failed to remove %s from the registry", self.describe())
        finally:
            try:
                await self._release_stream()
            finally:
                self.state = ConnectionState.CLOSED
                self._closed.set()

    async def _release_stream(self) -> None:
        task = self._writer_task
        try:
            # Let already-queued lines (e.g. a shutdown notice) go out first.
            if task is not None and not task.done():
                try:
                    self._outbox.put_nowait(None)
                except asyncio.QueueFull:
                    task.cancel()
                await asyncio.wait({task}, timeout=self.send_timeout)
        finally:
            if task is not None and not task.done():
                task.cancel()
            self.writer.close()

        try:
            await asyncio.wait_for(self.writer.wait_closed(), self.send_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            log.debug("Error closing stream for %s: %s", self.describe(), e)
