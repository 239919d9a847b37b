import asyncio
import enum
import logging
from typing import Dict, List, Optional, Protocol

from . import messages
from .election import elect_coordinator
from .history import MessageHistory

log = logging.getLogger("ftchat.registry")

DEFAULT_HISTORY_LENGTH = 20


class Member(Protocol):
    """What the registry needs from a connected client.

    ``Connection`` implements it for real sockets; tests use a plain double.
    """

    identity: Optional[str]
    host: str
    port: int
    last_activity: float

    def is_active(self) -> bool: ...

    def send(self, line: str) -> None: ...

    async def close(self, reason: str) -> None: ...


class AdmitResult(enum.Enum):
    OK = "ok"
    DUPLICATE = "duplicate"
    NOT_ACCEPTING = "not_accepting"
    INACTIVE = "inactive"


class Registry:
    """
    Session manager shared by every connection task.

    Holds identity -> member and the coordinator slot. Both are only read or
    mutated under ``self._lock``, so a caller never observes a member without a
    coordinator or a coordinator that is not a member.

    Operations never await network I/O: ``Member.send`` only queues the line.
    """

    def __init__(self, history_length: int = DEFAULT_HISTORY_LENGTH):
        self._members: Dict[str, Member] = {}
        self._coordinator: Optional[str] = None
        self._history = MessageHistory(history_length)
        self._accepting: bool = True
        self._lock = asyncio.Lock()

    # -----------------------------
    # Read-only views
    # -----------------------------
    @property
    def coordinator(self) -> Optional[str]:
        return self._coordinator

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def history(self) -> MessageHistory:
        return self._history

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, identity: object) -> bool:
        return identity in self._members

    def get(self, identity: str) -> Optional[Member]:
        return self._members.get(identity)

    def identities(self) -> List[str]:
        return sorted(self._members)

    def is_name_in_use(self, identity: str) -> bool:
        return identity in self._members

    async def snapshot(self) -> List[Member]:
        async with self._lock:
            return list(self._members.values())

    def stop_accepting(self) -> None:
        self._accepting = False

    # -----------------------------
    # Membership
    # -----------------------------
    async def admit(self, member: Member) -> AdmitResult:
        identity = member.identity
        async with self._lock:
            if not self._accepting:
                log.warning("Rejected %s: server is not accepting new clients.", identity)
                return AdmitResult.NOT_ACCEPTING
            if identity is None or identity in self._members:
                log.error("Attempted to add client with duplicate ID: %s", identity)
                return AdmitResult.DUPLICATE
            if not member.is_active():
                log.warning("Not admitting %s: connection is no longer active.", identity)
                return AdmitResult.INACTIVE

            first = not self._members
            self._members[identity] = member
            log.info("Client added: %s from %s:%s", identity, member.host, member.port)

            if first:
                self._coordinator = identity
                log.info("%s is the first client and becomes the coordinator.", identity)
                self._send_to(member, messages.first_coordinator())
            else:
                self._send_to(member, messages.coordinator_info(self._coordinator))

            self._history.system(f"{identity} joined the chat.")
            self._broadcast_locked(messages.joined(identity), exclude=identity)

            if first:
                self._broadcast_locked(messages.coordinator_info(identity))

            log.info("Current active clients: %d", len(self._members))
        return AdmitResult.OK

    async def remove(self, identity: str, reason: str, member: Optional[Member] = None) -> bool:
        """Remove ``identity``; a no-op if it is absent.

        When ``member`` is given, only that exact member's entry is removed, so a
        connection that lost a name race cannot evict the winner.
        """
        async with self._lock:
            current = self._members.get(identity)
            if current is None or (member is not None and current is not member):
                log.debug("Remove of %s ignored (not registered). Reason: %s", identity, reason)
                return False

            del self._members[identity]
            log.info("Client removed: %s. Reason: %s. Remaining clients: %d", identity, reason, len(self._members))

            self._history.system(f"{identity} left the chat ({reason}).")
            self._broadcast_locked(messages.left(identity, reason))

            if identity == self._coordinator:
                self._reelect_locked(identity)
        return True

    def _reelect_locked(self, departed: str) -> None:
        log.info("Coordinator (%s) left. Electing new coordinator...", departed)
        new_coordinator = elect_coordinator(self._members.keys())
        self._coordinator = new_coordinator

        if new_coordinator is None:
            log.info("No clients remaining to elect a new coordinator.")
            return

        log.info("New coordinator is: %s", new_coordinator)
        self._send_to(self._members[new_coordinator], messages.now_coordinator())
        self._broadcast_locked(messages.coordinator_info(new_coordinator))

    # -----------------------------
    # Routing
    # -----------------------------
    async def broadcast_send(self, sender: str, text: str) -> int:
        async with self._lock:
            self._history.broadcast(sender, text)
            return self._broadcast_locked(messages.broadcast(sender, text), exclude=sender)

    async def private_send(self, sender: str, recipient: str, text: str) -> bool:
        async with self._lock:
            sender_member = self._members.get(sender)
            recipient_member = self._members.get(recipient)

            if recipient_member is None or not recipient_member.is_active():
                problem = "not found" if recipient_member is None else "is offline"
                if sender_member is not None:
                    self._send_to(sender_member, messages.error(f"User '{recipient}' {problem}."))
                log.info("Private message failed: recipient %r %s (sender %r).", recipient, problem, sender)
                return False

            recipient_member.send(messages.private(sender, text))
            if sender_member is not None:
                self._send_to(sender_member, messages.info(f"Private message sent to {recipient}."))

            self._history.private(sender, recipient, text)
            log.info("Private message from %s to %s delivered.", sender, recipient)
            return True

    async def list_members(self, requester: str) -> None:
        async with self._lock:
            member = self._members.get(requester)
            if member is None or not member.is_active():
                log.warning("Cannot send client list to unreachable client: %s", requester)
                return

            member.send(messages.CLIENT_LIST_START)
            for identity in sorted(self._members):
                info = self._members[identity]
                member.send(messages.client_list_entry(identity, info.host, identity == self._coordinator))
            member.send(messages.CLIENT_LIST_END)
        log.debug("Client list sent to %s", requester)

    async def send_history(self, requester: str) -> None:
        async with self._lock:
            member = self._members.get(requester)
            if member is None or not member.is_active():
                log.warning("Cannot send history to unreachable client: %s", requester)
                return

            member.send(messages.HISTORY_START)
            for record in self._history.visible_to(requester):
                member.send(messages.history_entry(record.format()))
            member.send(messages.HISTORY_END)

    # -----------------------------
    # Helpers (lock held)
    # -----------------------------
    def _send_to(self, member: Member, line: str) -> bool:
        if not member.is_active():
            log.warning("Skipping send to inactive client %s: %s", member.identity, line)
            return False
        member.send(line)
        return True

    def _broadcast_locked(self, line: str, exclude: Optional[str] = None) -> int:
        log.debug("Broadcasting (excluding %s): %s", exclude or "nobody", line)
        sent = 0
        for identity, member in self._members.items():
            if identity == exclude:
                continue
            if self._send_to(member, line):
                sent += 1
        log.debug("Broadcast sent to %d active client(s).", sent)
        return sent
