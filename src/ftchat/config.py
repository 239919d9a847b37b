import argparse
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .connection import OUTBOUND_QUEUE_SIZE, SEND_TIMEOUT
from .errors import ConfigError
from .registry import DEFAULT_HISTORY_LENGTH
from .sweeper import ACTIVITY_CHECK_INTERVAL, CLIENT_TIMEOUT

# -----------------------------
# Defaults
# -----------------------------
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 59001
MAX_CLIENTS = 50
SHUTDOWN_GRACE = 2.0

OVERFLOW_QUEUE = "queue"       # wait for a free slot
OVERFLOW_REJECT = "reject"     # refuse with an ERROR line
OVERFLOW_POLICIES = (OVERFLOW_QUEUE, OVERFLOW_REJECT)

ENV_PREFIX = "FTCHAT_"


@dataclass
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_clients: int = MAX_CLIENTS
    overflow: str = OVERFLOW_QUEUE
    client_timeout: float = CLIENT_TIMEOUT
    activity_check_interval: float = ACTIVITY_CHECK_INTERVAL
    history_length: int = DEFAULT_HISTORY_LENGTH
    send_timeout: float = SEND_TIMEOUT
    outbound_queue_size: int = OUTBOUND_QUEUE_SIZE
    shutdown_grace: float = SHUTDOWN_GRACE

    def validate(self) -> "ServerConfig":
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be in 0-65535, got {self.port}")
        if self.overflow not in OVERFLOW_POLICIES:
            raise ConfigError(f"overflow must be one of {OVERFLOW_POLICIES}, got {self.overflow!r}")
        if self.history_length < 0:
            raise ConfigError(f"history_length must be >= 0, got {self.history_length}")
        for name in ("max_clients", "client_timeout", "activity_check_interval",
                     "send_timeout", "outbound_queue_size", "shutdown_grace"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")
        return self


def _env(environ: Mapping[str, str], name: str, default, cast):
    raw = environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"invalid {ENV_PREFIX}{name}={raw!r}") from e


def build_arg_parser(environ: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    """CLI flags; FTCHAT_* environment variables supply the defaults."""
    env = os.environ if environ is None else environ
    p = argparse.ArgumentParser(prog="ftchat-server", description="Text-protocol chat server")
    p.add_argument("--host", default=_env(env, "HOST", DEFAULT_HOST, str))
    p.add_argument("--port", type=int, default=_env(env, "PORT", DEFAULT_PORT, int))
    p.add_argument("--max-clients", type=int, default=_env(env, "MAX_CLIENTS", MAX_CLIENTS, int))
    p.add_argument("--overflow", choices=OVERFLOW_POLICIES, default=_env(env, "OVERFLOW", OVERFLOW_QUEUE, str))
    p.add_argument("--timeout", type=float, default=_env(env, "TIMEOUT", CLIENT_TIMEOUT, float),
                   help="seconds of inactivity before a client is evicted")
    p.add_argument("--check-interval", type=float,
                   default=_env(env, "CHECK_INTERVAL", ACTIVITY_CHECK_INTERVAL, float),
                   help="seconds between inactivity sweeps")
    p.add_argument("--history", type=int, default=_env(env, "HISTORY", DEFAULT_HISTORY_LENGTH, int),
                   help="number of recent messages kept for /history")
    p.add_argument("--send-timeout", type=float, default=SEND_TIMEOUT)
    p.add_argument("--log-level", default=_env(env, "LOG_LEVEL", "INFO", str))
    return p


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    return ServerConfig(
        host=args.host,
        port=args.port,
        max_clients=args.max_clients,
        overflow=args.overflow,
        client_timeout=args.timeout,
        activity_check_interval=args.check_interval,
        history_length=args.history,
        send_timeout=args.send_timeout,
    ).validate()


def parse_config(argv: Optional[List[str]] = None,
                 environ: Optional[Mapping[str, str]] = None) -> ServerConfig:
    return config_from_args(build_arg_parser(environ).parse_args(argv))
