"""
Server -> client protocol lines.

Every line starts with a keyword token; the rest is the payload:

    SUBMITNAME
    NAMEACCEPTED <id>
    NAMEINUSE
    MESSAGE <sender>: <text>
    PRIVATE from <sender>: <text>
    SYSTEM <text>
    COORDINATOR_INFO <id|none>
    INFO <text>
    ERROR <text>
    CLIENTLIST_START / - ID: <id> (Host: <addr>)[ [Coordinator]] / CLIENTLIST_END
    HISTORY_START / HISTORY_ENTRY <entry> / HISTORY_END
"""
from typing import Optional

# -----------------------------
# Keywords
# -----------------------------
SUBMIT_NAME = "SUBMITNAME"
NAME_ACCEPTED = "NAMEACCEPTED"
NAME_IN_USE = "NAMEINUSE"
MESSAGE = "MESSAGE"
PRIVATE = "PRIVATE"
SYSTEM = "SYSTEM"
COORDINATOR_INFO = "COORDINATOR_INFO"
INFO = "INFO"
ERROR = "ERROR"
CLIENT_LIST_START = "CLIENTLIST_START"
CLIENT_LIST_END = "CLIENTLIST_END"
HISTORY_START = "HISTORY_START"
HISTORY_ENTRY = "HISTORY_ENTRY"
HISTORY_END = "HISTORY_END"

NO_COORDINATOR = "none"


def submit_name() -> str:
    return SUBMIT_NAME


def name_accepted(identity: str) -> str:
    return f"{NAME_ACCEPTED} {identity}"


def name_in_use() -> str:
    return NAME_IN_USE


def broadcast(sender: str, text: str) -> str:
    return f"{MESSAGE} {sender}: {text}"


def private(sender: str, text: str) -> str:
    return f"{PRIVATE} from {sender}: {text}"


def system(text: str) -> str:
    return f"{SYSTEM} {text}"


def coordinator_info(identity: Optional[str]) -> str:
    return f"{COORDINATOR_INFO} {identity or NO_COORDINATOR}"


def info(text: str) -> str:
    return f"{INFO} {text}"


def error(text: str) -> str:
    return f"{ERROR} {text}"


def client_list_entry(identity: str, host: str, is_coordinator: bool) -> str:
    line = f"- ID: {identity} (Host: {host})"
    if is_coordinator:
        line += " [Coordinator]"
    return line


def history_entry(formatted: str) -> str:
    return f"{HISTORY_ENTRY} {formatted}"


# -----------------------------
# Fixed notices
# -----------------------------
def joined(identity: str) -> str:
    return system(f"{identity} joined the chat.")


def left(identity: str, reason: str) -> str:
    return system(f"{identity} left the chat ({reason}).")


def first_coordinator() -> str:
    return system("You are the first client and the coordinator.")


def now_coordinator() -> str:
    return system("You are now the coordinator.")


def inactivity_disconnect() -> str:
    return system("You have been disconnected due to inactivity.")


def shutting_down(reason: str) -> str:
    return system(f"Server is shutting down. {reason}".rstrip())


def server_full() -> str:
    return error("Server is full. Try again later.")
