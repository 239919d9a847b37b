"""Text-protocol chat server with coordinator election and inactivity eviction."""

from .config import ServerConfig
from .connection import Connection, ConnectionState
from .election import elect_coordinator
from .registry import AdmitResult, Member, Registry
from .server import ChatServer
from .sweeper import LivenessSweeper

__version__ = "0.1.0"

__all__ = [
    "AdmitResult",
    "ChatServer",
    "Connection",
    "ConnectionState",
    "LivenessSweeper",
    "Member",
    "Registry",
    "ServerConfig",
    "elect_coordinator",
]
