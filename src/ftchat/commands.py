import enum
import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import CommandError
from .identity import COMMAND_PREFIX

CMD_QUIT = "/quit"
CMD_WHO = "/who"
CMD_PING = "/ping"
CMD_MSG = "/msg"
CMD_HISTORY = "/history"
CMD_HELP = "/help"

_PRIVATE_RE = re.compile(r"^/msg\s+(\S+)\s+(.*)$", re.IGNORECASE)

HELP_LINES: List[str] = [
    "Available commands:",
    f"{CMD_MSG} <user> <text>   - Send a private message",
    f"{CMD_WHO}                 - List connected clients",
    f"{CMD_HISTORY}             - Show recent messages",
    f"{CMD_PING}                - Keep the connection alive",
    f"{CMD_HELP}                - Show this help",
    f"{CMD_QUIT}                - Disconnect",
]


class CommandKind(enum.Enum):
    EMPTY = "empty"
    QUIT = "quit"
    WHO = "who"
    PING = "ping"
    HISTORY = "history"
    HELP = "help"
    PRIVATE = "private"
    CHAT = "chat"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    text: str = ""
    recipient: Optional[str] = None


_EXACT = {
    CMD_QUIT: CommandKind.QUIT,
    CMD_WHO: CommandKind.WHO,
    CMD_PING: CommandKind.PING,
    CMD_HISTORY: CommandKind.HISTORY,
    CMD_HELP: CommandKind.HELP,
}


def parse_command(line: str, sender: str) -> Command:
    """
    Interpret one line received from an active client.

    Keywords are case-insensitive. Raises CommandError for an unknown command
    or an unusable /msg; the caller reports it and keeps the client connected.
    """
    line = line.strip()
    if not line:
        return Command(CommandKind.EMPTY)

    lowered = line.lower()
    kind = _EXACT.get(lowered)
    if kind is not None:
        return Command(kind)

    if lowered.startswith(CMD_MSG):
        return _parse_private(line, sender)

    if line.startswith(COMMAND_PREFIX):
        raise CommandError(f"Unknown command: {line}")

    return Command(CommandKind.CHAT, text=line)


def _parse_private(line: str, sender: str) -> Command:
    m = _PRIVATE_RE.match(line)
    if not m:
        raise CommandError(f"Invalid private message format. Use: {CMD_MSG} <recipientId> <message>")

    recipient, text = m.group(1), m.group(2)
    if recipient.lower() == sender.lower():
        raise CommandError("You cannot send a private message to yourself.")
    if not text.strip():
        raise CommandError("Private message text cannot be empty.")
    return Command(CommandKind.PRIVATE, text=text, recipient=recipient)
