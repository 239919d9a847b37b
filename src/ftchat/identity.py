from typing import Optional

MAX_IDENTITY_LENGTH = 20
COMMAND_PREFIX = "/"
RESERVED_IDENTITY = "System"

INVALID_IDENTITY_REASON = (
    f"Invalid username. Must be at most {MAX_IDENTITY_LENGTH} chars, no spaces, "
    f"not start with '{COMMAND_PREFIX}', and not '{RESERVED_IDENTITY}'."
)


def identity_problem(name: str) -> Optional[str]:
    """Return why ``name`` cannot be used as an identity, or None if it can.

    Only local rules are checked here; uniqueness is the registry's job.
    """
    if not name:
        return "Username cannot be empty."
    if (
        len(name) > MAX_IDENTITY_LENGTH
        or any(ch.isspace() for ch in name)
        or name.startswith(COMMAND_PREFIX)
        or name.lower() == RESERVED_IDENTITY.lower()
    ):
        return INVALID_IDENTITY_REASON
    return None


def is_valid_identity(name: str) -> bool:
    return identity_problem(name) is None
