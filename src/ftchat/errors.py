class ChatError(Exception):
    """Base class for errors raised by ftchat."""


class ConfigError(ChatError):
    """Invalid server configuration."""


class CommandError(ChatError):
    """A client command that cannot be executed.

    The message is user-facing: the connection sends it back as an ``ERROR``
    line and keeps the client connected.
    """
